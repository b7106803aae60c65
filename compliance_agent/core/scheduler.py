"""
Periodic job scheduling for the daemon, backed by APScheduler.
"""
import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from compliance_agent.core.errors import ConfigurationError
from compliance_agent.utils import get_logger, utc_now

logger = get_logger(__name__)

INITIAL_JOB_SUFFIX = "-initial"


def _safe_action(job_id: str, action: Callable[[], object]) -> Callable[[], None]:
    """
    Wraps a job so an exception is logged instead of reaching the scheduler.
    """
    def run():
        logger.debug(f"Job '{job_id}' started.")
        try:
            action()
        except Exception as e:
            logger.error(f"Job '{job_id}' failed: {e}", exc_info=True)
        else:
            logger.debug(f"Job '{job_id}' finished.")
    return run


class Scheduler:
    """
    Runs actions on a fixed hourly interval in a background thread.

    Scheduling a job id that already exists replaces it. A job never runs
    concurrently with itself and missed runs are coalesced into one.
    """

    def __init__(self, scheduler: Optional[BackgroundScheduler] = None):
        self._scheduler = scheduler if scheduler is not None else BackgroundScheduler(timezone="UTC")

    def schedule_job(self, job_id: str, interval_hours: int, action: Callable[[], object],
                     initial_delay_sec: Optional[int] = None):
        """
        Installs (or reinstalls) a periodic job.

        :param job_id: Job identifier
        :type job_id: str
        :param interval_hours: Hours between runs
        :type interval_hours: int
        :param action: Callable to run; its exceptions are logged and swallowed
        :type action: Callable[[], object]
        :param initial_delay_sec: If set, also run once this many seconds from now
        :type initial_delay_sec: Optional[int]
        :raises ConfigurationError: If the interval is not a positive integer
        """
        if isinstance(interval_hours, bool) or not isinstance(interval_hours, int) or interval_hours <= 0:
            raise ConfigurationError(f"Invalid sync interval: {interval_hours!r}. Must be a positive number of hours.")

        wrapped = _safe_action(job_id, action)
        self._scheduler.add_job(
            wrapped,
            trigger=IntervalTrigger(hours=interval_hours),
            id=job_id,
            name=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Scheduled job '{job_id}' every {interval_hours} hour(s).")

        initial_id = f"{job_id}{INITIAL_JOB_SUFFIX}"
        if initial_delay_sec is not None and initial_delay_sec >= 0:
            run_date = utc_now() + datetime.timedelta(seconds=initial_delay_sec)
            self._scheduler.add_job(
                wrapped,
                trigger=DateTrigger(run_date=run_date),
                id=initial_id,
                name=initial_id,
                replace_existing=True,
                max_instances=1,
            )
            logger.info(f"Job '{job_id}' will first run in {initial_delay_sec}s.")
        elif self._scheduler.get_job(initial_id) is not None:
            self._scheduler.remove_job(initial_id)

    def remove_job(self, job_id: str) -> bool:
        """
        Removes a job and its one-shot initial run.

        :return: True if the periodic job existed
        :rtype: bool
        """
        removed = False
        for candidate in (job_id, f"{job_id}{INITIAL_JOB_SUFFIX}"):
            if self._scheduler.get_job(candidate) is not None:
                self._scheduler.remove_job(candidate)
                removed = removed or candidate == job_id
        if removed:
            logger.info(f"Removed job '{job_id}'.")
        return removed

    def run_job_now(self, job_id: str):
        """
        Moves a job's next run to now.

        :raises KeyError: If no such job is scheduled
        """
        job = self._scheduler.get_job(job_id)
        if job is None:
            raise KeyError(f"No job with id '{job_id}'")
        job.modify(next_run_time=utc_now())
        logger.info(f"Job '{job_id}' triggered on demand.")

    def next_run_time(self, job_id: str) -> Optional[datetime.datetime]:
        job = self._scheduler.get_job(job_id)
        if job is None:
            return None
        # Not computed until the scheduler starts
        return getattr(job, 'next_run_time', None)

    @property
    def job_count(self) -> int:
        return len(self._scheduler.get_jobs())

    @property
    def is_running(self) -> bool:
        return bool(self._scheduler.running)

    def start(self):
        if self._scheduler.running:
            logger.debug("Scheduler already running.")
            return
        self._scheduler.start()
        logger.info(f"Scheduler started with {self.job_count} job(s).")

    def stop(self, wait: bool = True):
        """
        Stops the scheduler.

        :param wait: Block until running jobs finish
        :type wait: bool
        """
        if not self._scheduler.running:
            return
        logger.info(f"Stopping scheduler (wait: {wait})...")
        self._scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped.")
