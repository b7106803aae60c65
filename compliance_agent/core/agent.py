"""
Core Agent module for the Compliance Agent.
"""
import os
import signal
import threading
import datetime
from typing import Any, Callable, Dict, Optional

from compliance_agent.communication import HttpClient
from compliance_agent.config import ConfigManager, StateManager
from compliance_agent.core.agent_state import SyncStatus
from compliance_agent.core.errors import AgentError, ConfigurationError, RegistrationError
from compliance_agent.core.models import AgentState, SyncOutcome, UserProfile
from compliance_agent.core.registration import RegistrationHandshake
from compliance_agent.core.scheduler import Scheduler
from compliance_agent.core.sync_orchestrator import SyncOrchestrator, recover_stale_running
from compliance_agent.monitoring import PlatformAdapter, create_platform_adapter
from compliance_agent.system import LockManager, setup_directory_structure
from compliance_agent.utils import get_logger, get_file_logging_status, utc_now
from compliance_agent.version import __version__

logger = get_logger(__name__)

SYNC_JOB_ID = "compliance-sync"
DAEMON_POLL_INTERVAL_SEC = 1.0


class Agent:
    """
    Entry point for the caller contract: register, sync, run the daemon,
    report status and unregister.

    Collaborators are created from the configuration unless injected. The
    platform adapter is built on first use so status and unregister work on
    hosts without osquery.

    All state-changing operations run under the cross-process lock in the
    data directory. A RUNNING sync state found while holding that lock at
    startup is left over from a crashed process and is reset to ERROR.
    """

    def __init__(self,
                 config: ConfigManager,
                 state_manager: Optional[StateManager] = None,
                 http_client: Optional[HttpClient] = None,
                 adapter: Optional[PlatformAdapter] = None,
                 lock_manager: Optional[LockManager] = None,
                 scheduler: Optional[Scheduler] = None,
                 clock: Callable[[], datetime.datetime] = utc_now):
        """
        Initialize the agent with its dependencies.

        :param config: Configuration manager instance
        :param state_manager: State store. Defaults to the configured state file
        :param http_client: API client
        :param adapter: Platform adapter. Detected on first use when omitted
        :param lock_manager: Cross-process lock. Defaults to ``agent.lock`` in the data directory
        :param scheduler: Job scheduler for the daemon
        :param clock: Returns the current UTC time
        :raises StateStoreError: If the state file exists but cannot be read
        """
        logger.info("Initializing Agent...")
        self.config = config
        self.agent_version: str = config.get('agent.version', __version__)
        self.clock = clock

        base_dir = setup_directory_structure(config.base_dir)
        self.state_manager = state_manager or StateManager(config.state_file_path)
        self.http_client = http_client or HttpClient(config, self.state_manager)
        self.lock_manager = lock_manager or LockManager(os.path.join(base_dir, "data"))
        self.scheduler = scheduler or Scheduler()

        self._adapter = adapter
        self._orchestrator: Optional[SyncOrchestrator] = None
        self._handshake: Optional[RegistrationHandshake] = None
        self._stop_event: Optional[threading.Event] = None

        if self.lock_manager.acquire():
            try:
                recover_stale_running(self.state_manager)
            finally:
                self.lock_manager.release()

        logger.info(f"Agent initialized. Version: {self.agent_version}, "
                    f"Registered: {self.state_manager.is_registered}")

    @property
    def adapter(self) -> PlatformAdapter:
        if self._adapter is None:
            self._adapter = create_platform_adapter(config=self.config)
        return self._adapter

    @property
    def orchestrator(self) -> SyncOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = SyncOrchestrator(
                state_manager=self.state_manager,
                http_client=self.http_client,
                adapter=self.adapter,
                config=self.config,
                agent_version=self.agent_version,
                clock=self.clock,
            )
        return self._orchestrator

    @property
    def handshake(self) -> RegistrationHandshake:
        if self._handshake is None:
            self._handshake = RegistrationHandshake(
                state_manager=self.state_manager,
                http_client=self.http_client,
                adapter=self.adapter,
                agent_version=self.agent_version,
            )
        return self._handshake

    def register(self, token: str, region: str, resume: bool = False) -> UserProfile:
        """
        Registers this device with the compliance service.

        :param token: One-time registration token
        :type token: str
        :param region: Account region (NA, EU, APAC)
        :type region: str
        :param resume: Finish a registration that failed at device registration
        :type resume: bool
        :return: The registered user's profile
        :rtype: UserProfile
        :raises RegistrationError: If another agent process holds the lock,
            the agent is already registered, or there is nothing to resume
        :raises ApiError: If an API call fails
        """
        if not self.lock_manager.acquire():
            raise RegistrationError("Another agent process is running. Stop it before registering.")
        try:
            self.state_manager.reload()
            return self.handshake.register(token, region, resume=resume)
        finally:
            self.lock_manager.release()

    def sync(self, forced: bool = False) -> SyncOutcome:
        """
        Runs one sync if the throttles allow it.

        :param forced: Bypass the throttles. A running sync is never bypassed
        :type forced: bool
        :return: The outcome. Failures are reported as an ERROR outcome
        :rtype: SyncOutcome
        """
        if not self.lock_manager.acquire():
            logger.info("Another agent process holds the lock. Skipping sync.")
            return SyncOutcome(SyncStatus.SKIPPED_RUNNING, "Another agent process is running a sync.")
        try:
            try:
                self.state_manager.reload()
                if not self.state_manager.is_registered:
                    return SyncOutcome(SyncStatus.NOT_REGISTERED, "Agent is not registered.")
                orchestrator = self.orchestrator
            except AgentError as e:
                logger.error(f"Cannot start sync: {e}")
                return SyncOutcome(SyncStatus.ERROR, str(e), error=e)
            return orchestrator.trigger(forced)
        finally:
            self.lock_manager.release()

    def _scheduled_sync(self):
        outcome = self.sync(forced=False)
        if outcome.status == SyncStatus.ERROR:
            logger.error(f"Scheduled sync failed: {outcome.message}")
        else:
            logger.info(f"Scheduled sync finished: {outcome.status.value}. {outcome.message}")

    def run_daemon(self, interval_hours: Optional[int] = None, stop_event: Optional[threading.Event] = None):
        """
        Runs scheduled syncs until SIGINT/SIGTERM or until ``stop_event`` is set.

        :param interval_hours: Hours between syncs. Defaults to ``sync.interval_hours``
        :type interval_hours: Optional[int]
        :param stop_event: Event that ends the daemon when set
        :type stop_event: Optional[threading.Event]
        :raises ConfigurationError: If the interval is not a positive integer
        :raises AgentError: If another agent process holds the lock
        """
        interval = interval_hours if interval_hours is not None else self.config.get('sync.interval_hours', 2)
        if isinstance(interval, bool) or not isinstance(interval, int) or interval <= 0:
            raise ConfigurationError(f"Invalid sync interval: {interval!r}. Must be a positive number of hours.")

        if not self.lock_manager.acquire():
            logger.critical("Another agent process is already running. Daemon not started.")
            raise AgentError("Another agent process is already running.")

        self._stop_event = stop_event or threading.Event()
        previous_handlers = self._install_signal_handlers()
        try:
            logger.info("================ Starting Agent Daemon ================")
            self.state_manager.reload()
            recover_stale_running(self.state_manager)
            self.scheduler.schedule_job(
                SYNC_JOB_ID,
                interval,
                self._scheduled_sync,
                initial_delay_sec=self.config.get('daemon.initial_delay_sec', 10),
            )
            self.scheduler.start()
            logger.info(f"Daemon running. Sync interval: {interval} hour(s). "
                        f"Next run: {self.scheduler.next_run_time(SYNC_JOB_ID)}")

            while not self._stop_event.wait(DAEMON_POLL_INTERVAL_SEC):
                pass
            logger.info("Stop requested.")
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received (Ctrl+C). Stopping agent...")
        finally:
            self.graceful_shutdown()
            self._restore_signal_handlers(previous_handlers)

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    def graceful_shutdown(self):
        """
        Stops the scheduler, waiting for an in-flight sync, and releases the lock.
        """
        logger.info("================ Initiating Graceful Shutdown ================")
        self.scheduler.stop(wait=True)
        if self.lock_manager.is_held:
            logger.info("Releasing agent lock file...")
            self.lock_manager.release()
        logger.info("================ Agent Shutdown Complete ================")

    def _install_signal_handlers(self) -> Dict[int, Any]:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return {}

        def handle_signal(signum, _frame):
            logger.info(f"Received signal {signal.Signals(signum).name}. Stopping agent...")
            self.request_stop()

        previous: Dict[int, Any] = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.getsignal(sig)
            signal.signal(sig, handle_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, Any]):
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    def status(self) -> AgentState:
        """
        Returns a copy of the persisted state.

        :rtype: AgentState
        :raises StateStoreError: If the state file cannot be read
        """
        self.state_manager.reload()
        return self.state_manager.snapshot()

    def unregister(self):
        """
        Clears the credential and all other state.

        :raises RegistrationError: If another agent process holds the lock
        :raises StateStoreError: If the cleared state cannot be written
        """
        if not self.lock_manager.acquire():
            raise RegistrationError("Another agent process is running. Stop it before unregistering.")
        try:
            self.state_manager.clear()
            logger.info("Agent unregistered.")
        finally:
            self.lock_manager.release()

    def debug_info(self) -> Dict[str, Any]:
        """
        Gathers version, path and platform details for troubleshooting.

        :return: Debug report
        :rtype: Dict[str, Any]
        """
        info: Dict[str, Any] = {
            "agent_version": self.agent_version,
            "config_path": self.config.config_path,
            "state_file": self.state_manager.file_path,
            "registered": self.state_manager.is_registered,
            "region": self.state_manager.region or self.config.get('api.region'),
            "target_env": self.config.get('api.target_env'),
            "logging": get_file_logging_status(),
        }
        try:
            info["platform"] = self.adapter.debug_info()
        except AgentError as e:
            logger.warning(f"Platform details unavailable: {e}")
            info["platform_error"] = str(e)
        return info
