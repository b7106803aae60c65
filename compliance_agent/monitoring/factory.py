"""
Builds the platform adapter for the running host.
"""
from typing import Dict, Optional, Type, TYPE_CHECKING

from compliance_agent.monitoring.linux import DebianLinuxAdapter, RpmLinuxAdapter
from compliance_agent.monitoring.macos import MacOSAdapter
from compliance_agent.monitoring.osquery_client import DEFAULT_PROBE_TIMEOUT_SEC, TelemetryEngine
from compliance_agent.monitoring.platform_adapter import PlatformAdapter, PlatformKind, detect_platform
from compliance_agent.monitoring.windows import WindowsAdapter
from compliance_agent.system.session_user import SessionUser, resolve_session_user
from compliance_agent.utils import get_logger

if TYPE_CHECKING:
    from compliance_agent.config import ConfigManager

logger = get_logger(__name__)

ADAPTER_CLASSES: Dict[PlatformKind, Type[PlatformAdapter]] = {
    PlatformKind.MACOS: MacOSAdapter,
    PlatformKind.WINDOWS: WindowsAdapter,
    PlatformKind.LINUX_DEBIAN: DebianLinuxAdapter,
    PlatformKind.LINUX_RPM: RpmLinuxAdapter,
}


def create_platform_adapter(engine: Optional[TelemetryEngine] = None,
                            kind: Optional[PlatformKind] = None,
                            session_user: Optional[SessionUser] = None,
                            config: Optional['ConfigManager'] = None) -> PlatformAdapter:
    """
    Creates the adapter for a platform kind.

    :param engine: osquery engine. Built from ``osquery.*`` settings when omitted
    :type engine: Optional[TelemetryEngine]
    :param kind: Platform kind. Detected when omitted
    :type kind: Optional[PlatformKind]
    :param session_user: Desktop session user. Resolved on Linux when omitted
    :type session_user: Optional[SessionUser]
    :param config: Configuration manager
    :type config: Optional[ConfigManager]
    :return: The adapter
    :rtype: PlatformAdapter
    :raises EngineUnavailableError: On an unsupported operating system
    """
    kind = kind or detect_platform()
    if engine is None:
        engine = TelemetryEngine(
            binary_path=config.get('osquery.path') if config else None,
            probe_timeout=config.get('osquery.probe_timeout_sec', DEFAULT_PROBE_TIMEOUT_SEC)
            if config else DEFAULT_PROBE_TIMEOUT_SEC,
        )
    if session_user is None and kind in (PlatformKind.LINUX_DEBIAN, PlatformKind.LINUX_RPM):
        session_user = resolve_session_user()

    adapter_class = ADAPTER_CLASSES[kind]
    logger.info(f"Using {adapter_class.__name__} for platform {kind.value}")
    return adapter_class(engine, session_user=session_user)
