"""
Compliance Agent - Source Package

This package contains the sync orchestration, telemetry collection,
configuration, communication and utility modules for the agent.

Main components:
- Agent: Caller-facing entry point (register, sync, daemon, status, unregister)
- SyncOrchestrator: Decides when a sync runs and drives one cycle
- RegistrationHandshake: Binds the device to a user account
- ConfigManager: Manages agent configuration
- StateManager: Manages agent persistent state
- HttpClient: Compliance API client
- PlatformAdapter: Per-OS telemetry collection over osquery
"""


from .version import __version__, __app_name__


from .core import Agent
from .core import SyncOrchestrator
from .core import RegistrationHandshake
from .core import Scheduler


from .config import ConfigManager
from .config import StateManager


from .communication import HttpClient


from .monitoring import PlatformAdapter, create_platform_adapter

__all__ = [

    '__version__',
    '__app_name__',


    'Agent',
    'SyncOrchestrator',
    'RegistrationHandshake',
    'Scheduler',


    'ConfigManager',
    'StateManager',


    'HttpClient',


    'PlatformAdapter',
    'create_platform_adapter'
]
