"""
Core functionality for the Compliance Agent.
"""
from compliance_agent.core.errors import (
    AgentError,
    ConfigurationError,
    StateStoreError,
    EngineUnavailableError,
    ApiError,
    AuthError,
    AccountError,
    NetworkError,
    RegistrationError,
    AlreadyRegisteredError,
    NotRegisteredError
)
from compliance_agent.core.agent_state import SyncState, SyncStatus
from compliance_agent.core.models import (
    AgentState,
    UserProfile,
    DeviceIdentifiers,
    TelemetrySnapshot,
    SyncOutcome
)
from compliance_agent.core.scheduler import Scheduler
from compliance_agent.core.sync_orchestrator import SyncOrchestrator, recover_stale_running
from compliance_agent.core.registration import RegistrationHandshake
from compliance_agent.core.agent import Agent

__all__ = [
    'AgentError',
    'ConfigurationError',
    'StateStoreError',
    'EngineUnavailableError',
    'ApiError',
    'AuthError',
    'AccountError',
    'NetworkError',
    'RegistrationError',
    'AlreadyRegisteredError',
    'NotRegisteredError',

    'SyncState',
    'SyncStatus',

    'AgentState',
    'UserProfile',
    'DeviceIdentifiers',
    'TelemetrySnapshot',
    'SyncOutcome',

    'Scheduler',
    'SyncOrchestrator',
    'recover_stale_running',
    'RegistrationHandshake',
    'Agent'
]
