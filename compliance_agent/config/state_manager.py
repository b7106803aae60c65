"""
State Manager module for managing persistent agent state.
"""
import copy
import datetime
import os
import threading
import uuid
from typing import Any, Callable, Dict, List, Optional

from ..core.agent_state import SyncState
from ..core.errors import StateStoreError
from ..core.models import AgentState, UserProfile, state_field_names
from ..utils import get_logger, save_json, load_json, utc_now, format_timestamp, parse_timestamp

logger = get_logger(__name__)

STATE_DIR_MODE = 0o700
STATE_FILE_MODE = 0o600


class StateManager:
    """
    Single-document persistent store for registration and sync state.

    Every mutating call re-serializes the whole document and writes it to disk
    before returning, so the file is never more than one mutation behind
    memory. One re-entrant lock guards the in-memory mirror and the write; it
    is held per call, so only :meth:`update` gives atomicity across fields.
    """

    def __init__(self, file_path: str):
        """
        Initialize the StateManager and load any existing state document.

        :param file_path: Path to the JSON state document
        :type file_path: str
        :raises StateStoreError: If the directory cannot be created or the document is corrupt
        """
        self._file_path = os.path.abspath(os.path.expanduser(file_path))
        self._lock = threading.RLock()
        self._ensure_directory()
        self._state = self._load_state_from_file()
        logger.debug(f"StateManager initialized. State file: {self._file_path}")

    def _ensure_directory(self):
        directory = os.path.dirname(self._file_path)
        try:
            os.makedirs(directory, mode=STATE_DIR_MODE, exist_ok=True)
            os.chmod(directory, STATE_DIR_MODE)
        except OSError as e:
            logger.error(f"Error creating state directory {directory}: {e}")
            raise StateStoreError(f"Cannot create state directory {directory}: {e}") from e

    def _load_state_from_file(self) -> AgentState:
        """
        Loads the agent state from the JSON file.

        :return: Loaded state, or an empty state if the file does not exist
        :rtype: AgentState
        :raises StateStoreError: If the file is unreadable or not a JSON object
        """
        logger.debug(f"Loading agent state from: {self._file_path}")
        try:
            document = load_json(self._file_path, strict=True)
        except (ValueError, OSError) as e:
            raise StateStoreError(f"Cannot load state document {self._file_path}: {e}") from e
        if not isinstance(document, dict):
            raise StateStoreError(f"State document {self._file_path} is not a JSON object")
        return AgentState.from_document(document)

    def _save_state_to_file(self, state: AgentState):
        """
        Writes the full state document with owner-only permissions.

        :param state: State to persist
        :type state: AgentState
        :raises StateStoreError: If the write fails
        """
        if not save_json(state.to_document(), self._file_path, mode=STATE_FILE_MODE):
            raise StateStoreError(f"Failed to write state document {self._file_path}")

    def _commit(self, build: Callable[[AgentState], AgentState]):
        with self._lock:
            candidate = build(self._state.copy())
            self._save_state_to_file(candidate)
            self._state = candidate

    def _get(self, name: str) -> Any:
        with self._lock:
            return copy.deepcopy(getattr(self._state, name))

    @property
    def file_path(self) -> str:
        return self._file_path

    # Typed accessors

    @property
    def uuid(self) -> str:
        return self._get('uuid')

    def set_uuid(self, value: str):
        self.update(uuid=value)

    def ensure_uuid(self) -> str:
        """
        Returns the correlation identifier, generating and saving one if unset.

        :return: The stable correlation UUID
        :rtype: str
        """
        with self._lock:
            if not self._state.uuid:
                new_uuid = str(uuid.uuid4())
                self.update(uuid=new_uuid)
                logger.info(f"Generated new correlation ID: {new_uuid}")
            return self._state.uuid

    @property
    def access_token(self) -> str:
        return self._get('access_token')

    def set_access_token(self, value: str):
        self.update(access_token=value)

    @property
    def region(self) -> str:
        return self._get('region')

    def set_region(self, value: str):
        self.update(region=value)

    @property
    def app_version(self) -> str:
        return self._get('app_version')

    def set_app_version(self, value: str):
        self.update(app_version=value)

    @property
    def sync_state(self) -> SyncState:
        return self._get('sync_state')

    def set_sync_state(self, value: SyncState):
        self.update(sync_state=value)

    @property
    def last_checked_at(self) -> str:
        return self._get('last_checked_at')

    def set_last_checked_at(self, value: str):
        self.update(last_checked_at=value)

    @property
    def last_sync_attempted_at(self) -> str:
        return self._get('last_sync_attempted_at')

    def set_last_sync_attempted_at(self, value: str):
        self.update(last_sync_attempted_at=value)

    @property
    def user(self) -> Optional[UserProfile]:
        return self._get('user')

    def set_user(self, value: Optional[UserProfile]):
        self.update(user=value)

    @property
    def compliance_data(self) -> Optional[Any]:
        return self._get('compliance_data')

    def set_compliance_data(self, value: Optional[Any]):
        self.update(compliance_data=value)

    @property
    def win_av_services_match_list(self) -> Optional[List[Any]]:
        return self._get('win_av_services_match_list')

    def set_win_av_services_match_list(self, value: Optional[List[Any]]):
        self.update(win_av_services_match_list=value)

    # Bulk operations

    def update(self, **fields: Any):
        """
        Writes several fields in one locked, persisted mutation.

        ``last_sync_attempted_at`` never moves backwards: an older value than
        the stored one is clamped to the stored one.

        :param fields: Field names of :class:`AgentState` and their new values
        :raises ValueError: If a field name is unknown
        :raises StateStoreError: If the write fails; memory is left unchanged
        """
        known = state_field_names()
        unknown = [name for name in fields if name not in known]
        if unknown:
            raise ValueError(f"Unknown state field(s): {', '.join(unknown)}")

        def mutate(state: AgentState) -> AgentState:
            for name, value in fields.items():
                if name == 'sync_state':
                    value = SyncState.from_value(value)
                elif name == 'last_sync_attempted_at':
                    value = self._clamp_attempt_timestamp(state.last_sync_attempted_at, value)
                setattr(state, name, value)
            return state

        self._commit(mutate)
        logger.debug(f"Updated state fields: {', '.join(sorted(fields))}")

    @staticmethod
    def _clamp_attempt_timestamp(current: str, new: str) -> str:
        current_dt = parse_timestamp(current)
        new_dt = parse_timestamp(new)
        if current_dt and new_dt and new_dt < current_dt:
            logger.warning(f"Attempt timestamp {new} is older than stored {current}. Keeping stored value.")
            return current
        return new or ""

    def clear(self):
        """
        Resets every field to its zero value and writes the empty document.
        The file location is kept.

        :raises StateStoreError: If the write fails
        """
        self._commit(lambda _: AgentState())
        logger.info("Agent state cleared.")

    def snapshot(self) -> AgentState:
        with self._lock:
            return self._state.copy()

    def reload(self):
        with self._lock:
            self._state = self._load_state_from_file()

    # Derived helpers

    @property
    def is_registered(self) -> bool:
        return bool(self.access_token)

    @property
    def is_init_data_ready(self) -> bool:
        return self.win_av_services_match_list is not None

    def mark_sync_started(self, now: Optional[datetime.datetime] = None):
        """
        Persists ``RUNNING`` together with the attempt timestamp.

        A stored attempt timestamp ahead of ``now`` is left over from a clock
        that ran fast and is replaced rather than kept.

        :param now: Attempt time. Defaults to the current UTC time
        :type now: Optional[datetime.datetime]
        """
        started = now or utc_now()
        if started.tzinfo is None:
            started = started.replace(tzinfo=datetime.timezone.utc)
        stamp = format_timestamp(started)

        def mutate(state: AgentState) -> AgentState:
            stored = parse_timestamp(state.last_sync_attempted_at)
            if stored is not None and stored > started:
                logger.warning(f"Stored attempt timestamp {state.last_sync_attempted_at} is ahead of the clock. "
                               f"Replacing it with {stamp}.")
            state.sync_state = SyncState.RUNNING
            state.last_sync_attempted_at = stamp
            return state

        self._commit(mutate)

    def minutes_since_last_attempt(self, now: Optional[datetime.datetime] = None) -> int:
        """
        Whole minutes elapsed since the last sync attempt.

        :param now: Reference time. Defaults to the current UTC time
        :type now: Optional[datetime.datetime]
        :return: Elapsed minutes, or -1 if no valid attempt timestamp is stored
            or it lies in the future
        :rtype: int
        """
        return self._elapsed(self.last_sync_attempted_at, now, 60)

    def hours_since_last_success(self, now: Optional[datetime.datetime] = None) -> int:
        """
        Whole hours elapsed since the server last confirmed a sync.

        :param now: Reference time. Defaults to the current UTC time
        :type now: Optional[datetime.datetime]
        :return: Elapsed hours, or -1 if no valid checked-at timestamp is stored
            or it lies in the future
        :rtype: int
        """
        return self._elapsed(self.last_checked_at, now, 3600)

    @staticmethod
    def _elapsed(timestamp: str, now: Optional[datetime.datetime], unit_seconds: int) -> int:
        then = parse_timestamp(timestamp)
        if then is None:
            return -1
        reference = now or utc_now()
        if reference.tzinfo is None:
            reference = reference.replace(tzinfo=datetime.timezone.utc)
        elapsed = (reference - then).total_seconds()
        if elapsed < 0:
            return -1
        return int(elapsed // unit_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return self.snapshot().to_document()
