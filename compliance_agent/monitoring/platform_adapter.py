"""
Platform adapter base class, platform detection and probe helpers.
"""
import abc
import os
import shutil
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from compliance_agent.core.errors import EngineUnavailableError
from compliance_agent.core.models import DeviceIdentifiers, TelemetrySnapshot
from compliance_agent.monitoring.osquery_client import ProbeError, TelemetryEngine
from compliance_agent.system.session_user import SessionUser
from compliance_agent.utils import get_logger

logger = get_logger(__name__)

RPM_RELEASE_MARKERS: Tuple[str, ...] = (
    "/etc/redhat-release",
    "/etc/fedora-release",
    "/etc/centos-release",
    "/etc/rocky-release",
    "/etc/almalinux-release",
    "/etc/SuSE-release",
)
RPM_PACKAGE_MANAGERS: Tuple[str, ...] = ("rpm", "dnf", "yum", "zypper")

SYSTEM_INFO_QUERY = "SELECT board_serial, board_model, computer_name, hostname, local_hostname FROM system_info"
IDENTIFIERS_QUERY = "SELECT hardware_serial, board_serial FROM system_info"


class PlatformKind(Enum):
    MACOS = "MACOS"
    WINDOWS = "WINDOWS"
    LINUX_RPM = "LINUX_RPM"
    LINUX_DEBIAN = "LINUX_DEBIAN"

    @property
    def wire_platform(self) -> str:
        """Platform tag sent in the sync payload."""
        if self in (PlatformKind.LINUX_RPM, PlatformKind.LINUX_DEBIAN):
            return "LINUX"
        return self.value


def detect_platform(system: Optional[str] = None,
                    path_exists: Callable[[str], bool] = os.path.exists,
                    which: Callable[[str], Optional[str]] = shutil.which) -> PlatformKind:
    """
    Selects the probe set for this host.

    On Linux, any release marker file or RPM-family package manager on PATH
    routes to the RPM probe set; otherwise the host is treated as Debian-family.

    :param system: ``sys.platform`` value. Defaults to the running interpreter's
    :type system: Optional[str]
    :param path_exists: File existence check
    :type path_exists: Callable[[str], bool]
    :param which: Executable lookup
    :type which: Callable[[str], Optional[str]]
    :return: The platform kind
    :rtype: PlatformKind
    :raises EngineUnavailableError: On an unsupported operating system
    """
    system = system or sys.platform
    if system == "darwin":
        return PlatformKind.MACOS
    if system in ("win32", "cygwin"):
        return PlatformKind.WINDOWS
    if system.startswith("linux"):
        for marker in RPM_RELEASE_MARKERS:
            if path_exists(marker):
                logger.debug(f"RPM-family marker found: {marker}")
                return PlatformKind.LINUX_RPM
        for manager in RPM_PACKAGE_MANAGERS:
            if which(manager):
                logger.debug(f"RPM-family package manager found: {manager}")
                return PlatformKind.LINUX_RPM
        return PlatformKind.LINUX_DEBIAN
    raise EngineUnavailableError(f"Unsupported platform: {system}")


def coerce_setting(value: Any) -> Any:
    """
    Turns typed settings output such as ``uint32 300`` into ``300``.

    The last whitespace-delimited token is parsed as an integer; output that
    is not numeric is returned stripped but otherwise unchanged.

    :param value: Raw settings value
    :type value: Any
    :return: Integer value, or the original text
    :rtype: Any
    """
    if value is None or isinstance(value, bool) or isinstance(value, int):
        return value
    text = str(value).strip()
    tokens = text.split()
    if not tokens:
        return text
    try:
        return int(tokens[-1])
    except ValueError:
        return text


def parse_settings(output: Optional[str]) -> Dict[str, str]:
    """
    Parses ``gsettings list-recursively`` output into ``{key: last token}``.

    Each line is ``<schema> <key> [<type>] <value>``. Quotes around string
    values are dropped.

    :param output: Command output
    :type output: Optional[str]
    :return: Settings by key
    :rtype: Dict[str, str]
    """
    settings: Dict[str, str] = {}
    if not isinstance(output, str):
        return settings
    for line in output.splitlines():
        tokens = line.split()
        if len(tokens) < 3:
            continue
        settings[tokens[1]] = tokens[-1].strip("'\"")
    return settings


def int_or_none(value: Any) -> Optional[int]:
    coerced = coerce_setting(value)
    return coerced if isinstance(coerced, int) and not isinstance(coerced, bool) else None


@dataclass
class Probe:
    """
    One catalog entry: either an osquery ``query`` or a shell ``command``.

    ``session`` commands run in the desktop user's session. ``transform``
    reshapes the raw rows or text; any error it raises counts as a probe failure.
    """
    description: str
    query: Optional[str] = None
    command: Optional[str] = None
    session: bool = False
    transform: Optional[Callable[[Any], Any]] = None


def first_row(rows: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    return rows[0] if rows else None


class PlatformAdapter(abc.ABC):
    """
    Collects a telemetry snapshot for one operating-system family.

    Subclasses provide the platform catalog; this class runs each probe in
    isolation. A failing probe is logged and its fact left out. Only an
    unusable osquery engine aborts a collection.
    """
    kind: PlatformKind
    MAC_ADDRESS_QUERY: str = ""
    APP_LIST_QUERY: str = ""
    # osquery table -> profile directories (relative to home) that must exist for it to be queried
    BROWSER_PROFILE_DIRS: Dict[str, Sequence[str]] = {}

    def __init__(self, engine: TelemetryEngine,
                 session_user: Optional[SessionUser] = None,
                 home_dir: Optional[str] = None):
        self.engine = engine
        self.session_user = session_user
        if home_dir:
            self.home_dir = home_dir
        elif session_user is not None and session_user.home:
            self.home_dir = session_user.home
        else:
            self.home_dir = str(Path.home())
        self._failed_probes: List[str] = []

    def run_probe(self, probe: Probe) -> Optional[Any]:
        """
        Runs one probe and applies its transform.

        :param probe: The probe to run
        :type probe: Probe
        :return: Transformed result, or None if the probe failed
        :rtype: Optional[Any]
        :raises EngineUnavailableError: If the osquery engine cannot be used at all
        """
        try:
            if probe.query is not None:
                result: Any = self.engine.run_query(probe.query)
            elif probe.command is not None:
                if probe.session:
                    result = self.engine.run_session_command(probe.command, self.session_user)
                else:
                    result = self.engine.run_command(probe.command)
            else:
                raise ProbeError(f"Probe '{probe.description}' has neither a query nor a command")

            if probe.transform is not None:
                result = probe.transform(result)
            return result
        except EngineUnavailableError:
            raise
        except ProbeError as e:
            logger.warning(f"Probe '{probe.description}' failed: {e}")
        except Exception as e:
            logger.error(f"Unexpected error in probe '{probe.description}': {e}", exc_info=True)
        self._failed_probes.append(probe.description)
        return None

    def run_probes(self, probes: Sequence[Probe]) -> List[Optional[Any]]:
        return [self.run_probe(probe) for probe in probes]

    def collect(self, agent_version: str) -> TelemetrySnapshot:
        """
        Collects a full snapshot.

        :param agent_version: Version string stamped into the snapshot
        :type agent_version: str
        :return: The snapshot; facts whose probe failed are None
        :rtype: TelemetrySnapshot
        :raises EngineUnavailableError: If the osquery binary is missing or unusable
        """
        self._failed_probes = []
        # Fail fast before running any probe
        _ = self.engine.binary_path

        snapshot = TelemetrySnapshot(agent_version=agent_version, platform=self.kind.wire_platform)
        self._collect_common(snapshot)
        self._collect_platform(snapshot)

        if self._failed_probes:
            logger.info(f"Snapshot collected with {len(self._failed_probes)} failed probe(s): {', '.join(self._failed_probes)}")
        else:
            logger.info(f"Snapshot collected for {self.kind.value}.")
        return snapshot

    def _collect_common(self, snapshot: TelemetrySnapshot):
        snapshot.os_version = self.run_probe(Probe(
            "What Operating System is running and what is its version?",
            query="SELECT name, version, platform FROM os_version",
            transform=first_row,
        ))
        snapshot.hw_serial = self.run_probe(Probe(
            "What is the workstation's serial number?",
            query="SELECT hardware_serial FROM system_info",
            transform=first_row,
        ))
        snapshot.hw_model = self.run_probe(Probe(
            "What is the workstation's model?",
            query="SELECT hardware_model FROM system_info",
            transform=first_row,
        ))

        system_info = self.run_probe(Probe(
            "What is the system information?",
            query=SYSTEM_INFO_QUERY,
            transform=first_row,
        ))
        if system_info:
            snapshot.board_serial = system_info.get("board_serial")
            snapshot.board_model = system_info.get("board_model")
            snapshot.computer_name = system_info.get("computer_name")
            snapshot.host_name = system_info.get("hostname")
            snapshot.local_host_name = system_info.get("local_hostname")

        snapshot.app_list = self.run_probe(Probe(
            "Return a list of ALL applications installed on the workstation",
            query=self.APP_LIST_QUERY,
        ))
        snapshot.browser_extensions = self._collect_browser_extensions()
        snapshot.mac_address = self.run_probe(Probe(
            "What is the MAC Address of this machine?",
            query=self.MAC_ADDRESS_QUERY,
            transform=first_row,
        ))

    def browser_extension_probes(self) -> List[Probe]:
        """
        Extension queries whose browser profile directory exists under the home
        directory. Tables mapped to no directories are always queried.

        :return: Probes to run
        :rtype: List[Probe]
        """
        probes = []
        for table, profile_dirs in self.BROWSER_PROFILE_DIRS.items():
            if profile_dirs and not any(os.path.isdir(os.path.join(self.home_dir, d)) for d in profile_dirs):
                logger.debug(f"Skipping {table}: no browser profile directory under {self.home_dir}")
                continue
            probes.append(Probe(f"What are the {table} entries?", query=f"SELECT name FROM {table}"))
        return probes

    def _collect_browser_extensions(self) -> List[Dict[str, Any]]:
        extensions: List[Dict[str, Any]] = []
        for rows in self.run_probes(self.browser_extension_probes()):
            if rows:
                extensions.extend(rows)
        return extensions

    @abc.abstractmethod
    def _collect_platform(self, snapshot: TelemetrySnapshot):
        """Runs the platform-specific part of the catalog."""

    def device_identifiers(self) -> DeviceIdentifiers:
        """
        Collects the identity tuple used during registration.

        :return: Identifiers; a failed probe leaves its fields empty
        :rtype: DeviceIdentifiers
        :raises EngineUnavailableError: If the osquery binary is missing or unusable
        """
        identifiers = DeviceIdentifiers()
        serials = self.run_probe(Probe("What is the workstation's serial number?",
                                       query=IDENTIFIERS_QUERY, transform=first_row))
        if serials:
            identifiers.hardware_serial = serials.get("hardware_serial") or ""
            identifiers.board_serial = serials.get("board_serial") or ""
        mac = self.run_probe(Probe("What is the MAC Address of this machine?",
                                   query=self.MAC_ADDRESS_QUERY, transform=first_row))
        if mac:
            identifiers.mac = mac.get("mac") or ""
        return identifiers

    def debug_info(self) -> Dict[str, Any]:
        """
        Engine and OS versions plus device identifiers, for troubleshooting.

        :return: Debug report
        :rtype: Dict[str, Any]
        """
        return {
            "platform": self.kind.value,
            "osquery_path": self.engine.binary_path,
            "osquery": self.run_probe(Probe("What version of osquery are we using?",
                                            query="SELECT version FROM osquery_info", transform=first_row)),
            "os": self.run_probe(Probe("What operating system and version are we using?",
                                       query="SELECT version, build, platform FROM os_version", transform=first_row)),
            "system_info": self.device_identifiers().to_payload(),
            "session_user": self.session_user.name if self.session_user else None,
        }
