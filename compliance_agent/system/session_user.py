"""
Resolves the desktop-session user whose settings the Linux probes read.

When the agent runs through sudo or as a system service, per-user settings
(gsettings, D-Bus backed) must be read inside that user's session, not as
root. Candidate names come from the environment and are only accepted if they
match a strict pattern; anything else is rejected, never sanitized.
"""
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from compliance_agent.utils import get_logger

if os.name == "nt":
    pwd = None
else:
    import pwd

logger = get_logger(__name__)

SESSION_USER_ENV_VARS = ("SUDO_USER", "LOGNAME", "USER")
VALID_USERNAME_PATTERN = re.compile(r'[A-Za-z0-9_-]+')


@dataclass(frozen=True)
class SessionUser:
    name: str
    uid: Optional[int] = None
    home: Optional[str] = None

    @property
    def runtime_dir(self) -> Optional[str]:
        if self.uid is None:
            return None
        return f"/run/user/{self.uid}"

    @property
    def dbus_address(self) -> Optional[str]:
        if self.uid is None:
            return None
        return f"unix:path=/run/user/{self.uid}/bus"


def is_valid_username(candidate: Optional[str]) -> bool:
    """
    Checks that a candidate is a usable, non-root account name.

    :param candidate: Name taken from the environment or ``logname``
    :type candidate: Optional[str]
    :return: True if the name is non-empty, not ``root`` and only holds letters, digits, ``-`` and ``_``
    :rtype: bool
    """
    if not candidate or candidate == "root":
        return False
    return bool(VALID_USERNAME_PATTERN.fullmatch(candidate))


def _run_logname() -> Optional[str]:
    try:
        result = subprocess.run(["logname"], capture_output=True, text=True, timeout=5, check=False)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"logname lookup failed: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _lookup_account(name: str) -> SessionUser:
    if pwd is None:
        return SessionUser(name=name)
    try:
        entry = pwd.getpwnam(name)
    except KeyError:
        logger.debug(f"No passwd entry for session user {name}")
        return SessionUser(name=name)
    return SessionUser(name=name, uid=entry.pw_uid, home=entry.pw_dir)


def resolve_session_user(environ: Optional[Mapping[str, str]] = None,
                         logname_lookup: Callable[[], Optional[str]] = _run_logname) -> Optional[SessionUser]:
    """
    Picks the desktop-session user.

    Candidates are tried in order: ``SUDO_USER``, ``LOGNAME``, ``USER``, then
    the output of ``logname``. The first valid one wins.

    :param environ: Environment mapping. Defaults to ``os.environ``
    :type environ: Optional[Mapping[str, str]]
    :param logname_lookup: Callable returning the ``logname`` output
    :type logname_lookup: Callable[[], Optional[str]]
    :return: The session user, or None if no candidate is valid
    :rtype: Optional[SessionUser]
    """
    env = os.environ if environ is None else environ

    for var in SESSION_USER_ENV_VARS:
        candidate = env.get(var)
        if not candidate:
            continue
        if is_valid_username(candidate):
            logger.debug(f"Session user resolved from {var}: {candidate}")
            return _lookup_account(candidate)
        logger.debug(f"Rejected session user candidate from {var}: {candidate!r}")

    candidate = logname_lookup()
    if is_valid_username(candidate):
        logger.debug(f"Session user resolved from logname: {candidate}")
        return _lookup_account(candidate)
    if candidate:
        logger.debug(f"Rejected session user candidate from logname: {candidate!r}")

    logger.debug("No valid session user found.")
    return None


def is_privileged() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() == 0
