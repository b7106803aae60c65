"""
Exception types raised by the Compliance Agent.

Probe-level failures are never raised past the platform adapters; they are
logged and the affected fact is left out of the snapshot. Throttled and
concurrent-run skips are reported as :class:`SyncOutcome` statuses, not
exceptions.
"""
from typing import Optional


class AgentError(Exception):
    """Base class for all agent errors."""


class ConfigurationError(AgentError, ValueError):
    """Invalid configuration value (region, environment, interval...)."""


class StateStoreError(AgentError):
    """The persisted state document could not be read or written."""


class EngineUnavailableError(AgentError):
    """The osquery binary cannot be located, validated or executed."""


class ApiError(AgentError):
    """
    Error returned by, or while talking to, the compliance API.

    :ivar status_code: HTTP status of the failed response, if any
    :ivar code: Structured error code from the response body, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class AuthError(ApiError):
    """Bootstrap token or bearer credential is invalid, missing or expired."""


class AccountError(ApiError):
    """Account is pending, disabled, under maintenance or deleted."""


class NetworkError(ApiError):
    """Timeout or connection failure. Retried on the next scheduled attempt."""


class RegistrationError(AgentError):
    pass


class AlreadyRegisteredError(RegistrationError):
    pass


class NotRegisteredError(RegistrationError):
    pass
