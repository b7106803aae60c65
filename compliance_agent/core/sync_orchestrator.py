"""
Decides when a sync runs and drives one collection and upload cycle.
"""
import threading
import datetime
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from compliance_agent.core.agent_state import SyncState, SyncStatus
from compliance_agent.core.errors import AgentError, StateStoreError
from compliance_agent.core.models import SyncOutcome
from compliance_agent.utils import get_logger, utc_now, format_duration

if TYPE_CHECKING:
    from compliance_agent.communication import HttpClient
    from compliance_agent.config import ConfigManager, StateManager
    from compliance_agent.monitoring import PlatformAdapter

logger = get_logger(__name__)


def extract_last_checked_at(response: Optional[Dict[str, Any]]) -> str:
    """
    Reads the server's last-checked timestamp from a register or sync response.

    The key is ``lastcheckedAt`` at the top level or under ``data``;
    ``lastCheckedAt`` is accepted too.

    :param response: Parsed response
    :type response: Optional[Dict[str, Any]]
    :return: Timestamp string, or "" if absent
    :rtype: str
    """
    if not isinstance(response, dict):
        return ""
    for container in (response.get('data'), response):
        if isinstance(container, dict):
            value = container.get('lastcheckedAt') or container.get('lastCheckedAt')
            if isinstance(value, str) and value:
                return value
    return ""


def extract_match_list(response: Optional[Dict[str, Any]]) -> Optional[List[Any]]:
    if not isinstance(response, dict):
        return None
    value = response.get('winAvServicesMatchList')
    return value if isinstance(value, list) else None


class SyncOrchestrator:
    """
    Runs the sync policy against the persisted state.

    A sync is skipped while another is RUNNING, when the last attempt is
    within ``sync.min_minutes_between_syncs``, or when the last confirmed
    success is within ``sync.min_hours_since_last_sync``. Forced syncs bypass
    the two throttles but never the RUNNING guard. Once a cycle starts, the
    state always ends in SUCCESS or ERROR.
    """

    def __init__(self,
                 state_manager: 'StateManager',
                 http_client: 'HttpClient',
                 adapter: 'PlatformAdapter',
                 config: 'ConfigManager',
                 agent_version: str,
                 clock: Callable[[], datetime.datetime] = utc_now):
        """
        :param state_manager: Agent state store
        :type state_manager: StateManager
        :param http_client: API client
        :type http_client: HttpClient
        :param adapter: Platform adapter used for collection
        :type adapter: PlatformAdapter
        :param config: Source of the throttle settings
        :type config: ConfigManager
        :param agent_version: Version stamped into snapshots
        :type agent_version: str
        :param clock: Returns the current UTC time
        :type clock: Callable[[], datetime.datetime]
        """
        self.state_manager = state_manager
        self.http_client = http_client
        self.adapter = adapter
        self.agent_version = agent_version
        self.clock = clock
        self.min_minutes_between_syncs: int = config.get('sync.min_minutes_between_syncs', 15)
        self.min_hours_since_last_sync: int = config.get('sync.min_hours_since_last_sync', 24)
        self._trigger_lock = threading.Lock()

    def trigger(self, forced: bool = False) -> SyncOutcome:
        """
        Runs one sync if the policy allows it.

        :param forced: Bypass the throttles
        :type forced: bool
        :return: The outcome; pipeline errors are reported here, not raised
        :rtype: SyncOutcome
        """
        if not self.state_manager.is_registered:
            logger.warning("Sync requested but the agent is not registered.")
            return SyncOutcome(SyncStatus.NOT_REGISTERED, "Agent is not registered.")

        if not self._trigger_lock.acquire(blocking=False):
            logger.info("Sync already in progress in this process. Skipping.")
            return SyncOutcome(SyncStatus.SKIPPED_RUNNING, "A sync is already running.")
        try:
            skip = self._check_policy(forced)
            if skip is not None:
                return skip
            return self._run_cycle(forced)
        finally:
            self._trigger_lock.release()

    def _check_policy(self, forced: bool) -> Optional[SyncOutcome]:
        if self.state_manager.sync_state == SyncState.RUNNING:
            logger.info("Sync state is RUNNING. Skipping.")
            return SyncOutcome(SyncStatus.SKIPPED_RUNNING, "A sync is already running.",
                               last_checked_at=self.state_manager.last_checked_at)
        if forced:
            return None

        now = self.clock()
        minutes = self.state_manager.minutes_since_last_attempt(now)
        if 0 <= minutes < self.min_minutes_between_syncs:
            remaining = self.min_minutes_between_syncs - minutes
            logger.info(f"Last attempt was {minutes} minute(s) ago. Next sync allowed in {remaining} minute(s).")
            return SyncOutcome(SyncStatus.SKIPPED_THROTTLED,
                               f"Sync attempted recently. Try again in {remaining} minute(s).",
                               remaining_wait_minutes=remaining,
                               last_checked_at=self.state_manager.last_checked_at)

        hours = self.state_manager.hours_since_last_success(now)
        if 0 <= hours < self.min_hours_since_last_sync:
            logger.info(f"Last successful sync was {hours} hour(s) ago. Skipping.")
            return SyncOutcome(SyncStatus.SKIPPED_RECENT_SUCCESS,
                               f"Last successful sync was {hours} hour(s) ago.",
                               last_checked_at=self.state_manager.last_checked_at)
        return None

    def _run_cycle(self, forced: bool) -> SyncOutcome:
        started = self.clock()
        finished = False
        try:
            self.state_manager.mark_sync_started(started)
            logger.info(f"State transition: -> {SyncState.RUNNING.name} (forced: {forced})")

            self._ensure_init_data()

            snapshot = self.adapter.collect(self.agent_version)
            snapshot.manual_run = forced

            response = self.http_client.sync(snapshot)
            last_checked_at = extract_last_checked_at(response)
            fields: Dict[str, Any] = {
                'sync_state': SyncState.SUCCESS,
                'compliance_data': response,
            }
            if last_checked_at:
                fields['last_checked_at'] = last_checked_at
            match_list = extract_match_list(response)
            if match_list:
                fields['win_av_services_match_list'] = match_list
            self.state_manager.update(**fields)
            finished = True

            logger.info(f"State transition: {SyncState.RUNNING.name} -> {SyncState.SUCCESS.name} "
                        f"(started {format_duration(self.clock() - started)})")
            return SyncOutcome(SyncStatus.SUCCESS, "Sync completed.", last_checked_at=last_checked_at)
        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=not isinstance(e, AgentError))
            return SyncOutcome(SyncStatus.ERROR, str(e) or type(e).__name__, error=e,
                               last_checked_at=self.state_manager.last_checked_at)
        finally:
            if not finished:
                self._mark_error()

    def _ensure_init_data(self):
        if self.state_manager.is_init_data_ready:
            return
        logger.info("Fetching init data...")
        response = self.http_client.get_init_data()
        self.state_manager.set_win_av_services_match_list(extract_match_list(response) or [])

    def _mark_error(self):
        try:
            self.state_manager.set_sync_state(SyncState.ERROR)
            logger.info(f"State transition: {SyncState.RUNNING.name} -> {SyncState.ERROR.name}")
        except StateStoreError as e:
            logger.critical(f"Could not persist ERROR sync state: {e}")


def recover_stale_running(state_manager: 'StateManager') -> bool:
    """
    Resets a RUNNING state left behind by a crashed process to ERROR.

    Only call this while holding the cross-process lock.

    :param state_manager: Agent state store
    :type state_manager: StateManager
    :return: True if a stale state was reset
    :rtype: bool
    """
    if state_manager.sync_state != SyncState.RUNNING:
        return False
    logger.warning(f"Found stale RUNNING sync state (last attempt: "
                   f"{state_manager.last_sync_attempted_at or 'unknown'}). Resetting to ERROR.")
    state_manager.set_sync_state(SyncState.ERROR)
    return True
