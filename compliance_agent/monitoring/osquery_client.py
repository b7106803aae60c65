"""
Runs osquery queries and fixed shell probes for the platform adapters.
"""
import json
import os
import re
import shutil
import subprocess
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from compliance_agent.core.errors import AgentError, EngineUnavailableError
from compliance_agent.system.session_user import SessionUser, is_privileged
from compliance_agent.utils import get_logger

logger = get_logger(__name__)

OSQUERY_PATH_ENV_VAR = "CLI_OSQUERYI_PATH"
UNSAFE_PATH_CHARACTERS = re.compile(r'[;&|`$(){}\[\]<>!]')
DEFAULT_PROBE_TIMEOUT_SEC = 120


class ProbeError(AgentError):
    """A single query or command failed. Caught by the platform adapters."""


def osquery_binary_name(os_name: str = os.name) -> str:
    return "osqueryi.exe" if os_name == 'nt' else "osqueryi"


def well_known_osquery_locations(home: Optional[str] = None) -> List[str]:
    """
    Install locations searched after the configured path, the environment and PATH.

    :param home: Home directory for per-user installs
    :type home: Optional[str]
    :return: Candidate binary paths in search order
    :rtype: List[str]
    """
    locations: List[str] = []
    if home:
        locations.extend([
            os.path.join(home, ".local", "bin", "osqueryi"),
            os.path.join(home, ".local", "lib", "compliance-agent", "bin", "osqueryi"),
        ])
    locations.extend([
        "/app/bin/osqueryi",
        "/usr/local/bin/osqueryi",
        "/usr/bin/osqueryi",
        "/opt/osquery/bin/osqueryi",
        "/usr/lib/compliance-agent/bin/osqueryi",
        "/usr/lib64/compliance-agent/bin/osqueryi",
        "C:\\Program Files\\osquery\\osqueryi.exe",
        "C:\\ProgramData\\osquery\\osqueryi.exe",
    ])
    return locations


def find_osquery_binary(configured_path: Optional[str] = None,
                        environ: Optional[Mapping[str, str]] = None,
                        os_name: str = os.name) -> Optional[str]:
    """
    Locates the osqueryi binary.

    Search order: the configured path, ``CLI_OSQUERYI_PATH``, ``PATH``, then
    well-known install locations. A configured or environment path is returned
    as-is so validation can report why it is unusable.

    :param configured_path: ``osquery.path`` from the configuration
    :type configured_path: Optional[str]
    :param environ: Environment mapping. Defaults to ``os.environ``
    :type environ: Optional[Mapping[str, str]]
    :param os_name: ``os.name`` of the target host
    :type os_name: str
    :return: Path to the binary or None if not found
    :rtype: Optional[str]
    """
    env = os.environ if environ is None else environ
    if configured_path:
        return configured_path
    if env.get(OSQUERY_PATH_ENV_VAR):
        return env[OSQUERY_PATH_ENV_VAR]

    binary_name = osquery_binary_name(os_name)
    found = shutil.which(binary_name)
    if found:
        return found

    for candidate in well_known_osquery_locations(env.get("HOME")):
        if os.path.basename(candidate).lower() == binary_name and os.path.isfile(candidate):
            return candidate
    return None


def validate_binary_path(path: Optional[str], binary_name: Optional[str] = None) -> str:
    """
    Validates the osqueryi path before it is executed.

    :param path: Candidate binary path
    :type path: Optional[str]
    :param binary_name: Required base name. Defaults to the platform's osqueryi name
    :type binary_name: Optional[str]
    :return: The normalized path
    :rtype: str
    :raises EngineUnavailableError: If the path is empty, has the wrong base name,
        holds a shell metacharacter or does not exist
    """
    binary_name = binary_name or osquery_binary_name()
    if not path:
        raise EngineUnavailableError("osqueryi binary not found in PATH or common install locations")

    normalized = os.path.normpath(path)
    basename = os.path.basename(normalized)
    if os.name == 'nt':
        name_ok = basename.lower() == binary_name.lower()
    else:
        name_ok = basename == binary_name
    if not name_ok:
        raise EngineUnavailableError(f"Invalid osqueryi binary path: must end with '{binary_name}'")
    if UNSAFE_PATH_CHARACTERS.search(normalized):
        raise EngineUnavailableError("Invalid osqueryi binary path: contains unsafe characters")
    if not os.path.isfile(normalized):
        raise EngineUnavailableError(f"osqueryi binary not found at: {normalized}")
    return normalized


class TelemetryEngine:
    """
    Thin wrapper over the osqueryi binary and the shell.

    Queries run without a shell as ``osqueryi --json <sql>``. Commands are
    fixed strings from the platform catalogs and run through ``sh -c`` (or
    ``cmd /c`` on Windows); callers never interpolate external values into them.
    """

    def __init__(self,
                 binary_path: Optional[str] = None,
                 probe_timeout: int = DEFAULT_PROBE_TIMEOUT_SEC,
                 os_name: str = os.name,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 environ: Optional[Mapping[str, str]] = None):
        """
        :param binary_path: Configured osqueryi path; discovered when empty
        :type binary_path: Optional[str]
        :param probe_timeout: Timeout in seconds for each query or command
        :type probe_timeout: int
        :param os_name: ``os.name`` of the host, selects the command shell
        :type os_name: str
        :param runner: Process runner with the ``subprocess.run`` signature
        :type runner: Callable[..., subprocess.CompletedProcess]
        :param environ: Environment mapping used for discovery
        :type environ: Optional[Mapping[str, str]]
        """
        self._configured_path = binary_path
        self._environ = environ
        self._resolved_path: Optional[str] = None
        self.probe_timeout = probe_timeout
        self.os_name = os_name
        self._runner = runner

    @property
    def binary_path(self) -> str:
        """
        The validated osqueryi path. Discovery runs once; validation runs on every access.

        :raises EngineUnavailableError: If the binary cannot be found or fails validation
        """
        if self._resolved_path is None:
            self._resolved_path = find_osquery_binary(self._configured_path, self._environ, self.os_name)
            if self._resolved_path:
                logger.debug(f"Using osqueryi binary: {self._resolved_path}")
        return validate_binary_path(self._resolved_path, osquery_binary_name(self.os_name))

    def _execute(self, argv: Sequence[str]) -> subprocess.CompletedProcess:
        try:
            return self._runner(
                list(argv),
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=self.probe_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeError(f"Timed out after {self.probe_timeout}s: {argv[0]}") from e

    def run_query(self, sql: str) -> List[Dict[str, Any]]:
        """
        Runs one osquery SQL statement.

        :param sql: Query from a platform catalog
        :type sql: str
        :return: Result rows
        :rtype: List[Dict[str, Any]]
        :raises EngineUnavailableError: If the binary is missing or cannot be executed
        :raises ProbeError: If the query fails or its output is not a JSON array
        """
        binary = self.binary_path
        logger.debug(f"Executing osquery: {sql}")
        try:
            result = self._execute([binary, "--json", sql])
        except OSError as e:
            raise EngineUnavailableError(f"Cannot execute osqueryi at {binary}: {e}") from e

        if result.returncode != 0:
            raise ProbeError(f"osquery error (exit {result.returncode}): {(result.stderr or '').strip()}")
        try:
            rows = json.loads(result.stdout or "[]")
        except ValueError as e:
            raise ProbeError(f"Failed to parse osquery output: {e}") from e
        if not isinstance(rows, list):
            raise ProbeError("osquery output is not a JSON array")
        logger.debug(f"Query returned {len(rows)} rows")
        return rows

    def _shell_argv(self, command: str) -> List[str]:
        if self.os_name == 'nt':
            return ["cmd", "/c", f"chcp 65001>nul && {command}"]
        return ["sh", "-c", command]

    def _run_argv(self, argv: Sequence[str]) -> str:
        try:
            result = self._execute(argv)
        except OSError as e:
            raise ProbeError(f"Cannot execute {argv[0]}: {e}") from e
        stderr = (result.stderr or "").strip()
        if result.returncode != 0:
            raise ProbeError(f"Command failed (exit {result.returncode}): {stderr}")
        if stderr:
            raise ProbeError(f"Command wrote to stderr: {stderr}")
        return (result.stdout or "").strip()

    def run_command(self, command: str) -> str:
        """
        Runs a fixed catalog command through the platform shell.

        :param command: Command string from a platform catalog
        :type command: str
        :return: Stripped standard output
        :rtype: str
        :raises ProbeError: If the command fails or writes to stderr
        """
        logger.debug(f"Executing command: {command}")
        return self._run_argv(self._shell_argv(command))

    def run_session_command(self, command: str, session_user: Optional[SessionUser]) -> str:
        """
        Runs a fixed catalog command inside the desktop user's session.

        When the agent is privileged and the session user's uid is known, the
        command runs as that user with the session's runtime directory and
        D-Bus address. If that fails, the bare command is tried instead.

        :param command: Command string from a platform catalog
        :type command: str
        :param session_user: Resolved session user, if any
        :type session_user: Optional[SessionUser]
        :return: Stripped standard output
        :rtype: str
        :raises ProbeError: If both the session and the bare invocation fail
        """
        if session_user is not None and session_user.uid is not None and self.os_name != 'nt' and is_privileged():
            argv = [
                "sudo", "-u", session_user.name,
                "env",
                f"XDG_RUNTIME_DIR={session_user.runtime_dir}",
                f"DBUS_SESSION_BUS_ADDRESS={session_user.dbus_address}",
                "sh", "-c", command,
            ]
            logger.debug(f"Executing command in session of {session_user.name}: {command}")
            try:
                return self._run_argv(argv)
            except ProbeError as e:
                logger.debug(f"Session command failed ({e}). Retrying without session context.")
        return self.run_command(command)

