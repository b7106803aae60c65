"""
Defines the sync states persisted by the agent and the outcomes of a sync call.
"""
from enum import Enum


class SyncState(Enum):
    """
    Enumeration of persisted sync states.

    The value is what is written to the state document. ``NEVER`` is stored as
    an empty string so a fresh or cleared document reads back as ``NEVER``.

    States:
        NEVER: No sync has been attempted since registration or the last clear
        RUNNING: A collection and upload cycle is in progress
        SUCCESS: The last cycle completed and the upload was accepted
        ERROR: The last cycle failed at some pipeline step
    """
    NEVER = ""
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"

    @classmethod
    def from_value(cls, value) -> 'SyncState':
        if isinstance(value, cls):
            return value
        try:
            return cls(value or "")
        except ValueError:
            return cls.NEVER


class SyncStatus(Enum):
    """
    Result kinds returned by a sync trigger.
    """
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    SKIPPED_RUNNING = "SKIPPED_RUNNING"
    SKIPPED_THROTTLED = "SKIPPED_THROTTLED"
    SKIPPED_RECENT_SUCCESS = "SKIPPED_RECENT_SUCCESS"
    NOT_REGISTERED = "NOT_REGISTERED"

    @property
    def is_skip(self) -> bool:
        return self in (SyncStatus.SKIPPED_RUNNING,
                        SyncStatus.SKIPPED_THROTTLED,
                        SyncStatus.SKIPPED_RECENT_SUCCESS)
