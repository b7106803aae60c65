"""
Telemetry collection components for the Compliance Agent.
"""
from compliance_agent.monitoring.osquery_client import (
    ProbeError,
    TelemetryEngine,
    find_osquery_binary,
    validate_binary_path
)
from compliance_agent.monitoring.platform_adapter import (
    PlatformAdapter,
    PlatformKind,
    Probe,
    detect_platform
)
from compliance_agent.monitoring.macos import MacOSAdapter
from compliance_agent.monitoring.windows import WindowsAdapter
from compliance_agent.monitoring.linux import LinuxAdapter, DebianLinuxAdapter, RpmLinuxAdapter
from compliance_agent.monitoring.factory import create_platform_adapter

__all__ = [
    'ProbeError',
    'TelemetryEngine',
    'find_osquery_binary',
    'validate_binary_path',

    'PlatformAdapter',
    'PlatformKind',
    'Probe',
    'detect_platform',

    'MacOSAdapter',
    'WindowsAdapter',
    'LinuxAdapter',
    'DebianLinuxAdapter',
    'RpmLinuxAdapter',
    'create_platform_adapter'
]
