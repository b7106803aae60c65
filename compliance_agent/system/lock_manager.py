"""
Manages the agent's lock file so only one process syncs at a time.
Uses an advisory file lock plus PID and timestamp checks.
"""
import os
import atexit
import threading
from datetime import datetime, timezone, timedelta
from typing import Optional, Tuple

import psutil

from compliance_agent.utils import get_logger

if os.name == 'nt':
    import msvcrt
else:
    import fcntl

logger = get_logger(__name__)

LOCK_FILENAME = "agent.lock"
LOCK_STALE_TIMEOUT_SECONDS = 120


def _lock_file(fd: int):
    """
    Takes a non-blocking exclusive lock on an open file descriptor.

    :raises OSError: If another process holds the lock
    """
    if os.name == 'nt':
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(fd: int):
    if os.name == 'nt':
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class LockManager:
    """
    Manages the agent.lock file for cross-process exclusion.

    The lock is re-entrant within one instance: nested :meth:`acquire` calls
    only bump a counter, and the file lock is dropped when the matching number
    of :meth:`release` calls has been made. While held, a background thread
    refreshes the timestamp so other processes can tell a live holder from a
    stale file.
    """

    def __init__(self, storage_path: str, lock_filename: str = LOCK_FILENAME):
        """
        :param storage_path: Existing directory that holds the lock file
        :type storage_path: str
        :raises ValueError: If storage_path is invalid
        """
        if not storage_path or not os.path.isdir(storage_path):
            raise ValueError(f"Invalid storage path provided to LockManager: {storage_path}")

        self.lock_file_path = os.path.join(storage_path, lock_filename)
        self._lock_fd: Optional[int] = None
        self._depth = 0
        self._mutex = threading.Lock()
        self._updater_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        logger.debug(f"LockManager initialized. Lock file path: {self.lock_file_path}")

    @property
    def is_held(self) -> bool:
        return self._lock_fd is not None

    def _read_lock_content(self, fd: int) -> Tuple[Optional[int], Optional[datetime]]:
        """
        Parse the ``pid|timestamp`` record. Naive timestamps are read as UTC.

        :return: (pid, timestamp), or (None, None) for an empty or malformed record
        :rtype: Tuple[Optional[int], Optional[datetime]]
        """
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            content = os.read(fd, 100).decode('utf-8').strip()
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Lock record unreadable: {e}")
            return None, None

        if not content:
            return None, None
        parts = content.split('|', 1)
        if len(parts) != 2:
            logger.warning(f"Malformed lock record: {content!r}")
            return None, None
        try:
            pid, timestamp = int(parts[0]), datetime.fromisoformat(parts[1])
        except ValueError as e:
            logger.warning(f"Unparseable lock record: {e}")
            return None, None
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return pid, timestamp

    def _write_lock_content(self, fd: int) -> bool:
        """
        Replace the record with this process and the current time.

        :rtype: bool
        """
        try:
            content = f"{os.getpid()}|{datetime.now(timezone.utc).isoformat()}".encode('utf-8')
            os.lseek(fd, 0, os.SEEK_SET)
            written = os.write(fd, content)
            os.ftruncate(fd, written)
            os.fsync(fd)
            return True
        except OSError as e:
            logger.error(f"Could not write lock record to {self.lock_file_path}: {e}")
            return False

    @staticmethod
    def _is_live_holder(pid: int, timestamp: datetime) -> bool:
        if pid == os.getpid():
            return False
        if not psutil.pid_exists(pid):
            logger.warning(f"Lock holder PID {pid} is gone; treating lock as stale.")
            return False
        if datetime.now(timezone.utc) - timestamp > timedelta(seconds=LOCK_STALE_TIMEOUT_SECONDS):
            logger.warning(f"Lock record from PID {pid} not refreshed since {timestamp}; treating lock as stale.")
            return False
        return True

    def acquire(self) -> bool:
        """
        Try to take the lock without blocking.

        :return: False when another live process holds it
        :rtype: bool
        """
        with self._mutex:
            if self._lock_fd is not None:
                self._depth += 1
                return True

            try:
                fd = os.open(self.lock_file_path, os.O_CREAT | os.O_RDWR, 0o600)
            except OSError as e:
                logger.critical(f"Cannot open lock file {self.lock_file_path}: {e}")
                return False

            try:
                _lock_file(fd)
            except OSError:
                pid, _ = self._read_lock_content(fd)
                logger.warning(f"Lock file {self.lock_file_path} is held by another process (PID {pid}).")
                os.close(fd)
                return False

            pid, timestamp = self._read_lock_content(fd)
            if pid is not None and timestamp is not None and self._is_live_holder(pid, timestamp):
                logger.warning(f"Lock file {self.lock_file_path} records running PID {pid} with a fresh timestamp. Cannot acquire.")
                _unlock_file(fd)
                os.close(fd)
                return False
            if pid is not None:
                logger.info(f"Taking over lock file left by PID {pid}.")

            if not self._write_lock_content(fd):
                _unlock_file(fd)
                os.close(fd)
                return False

            self._lock_fd = fd
            self._depth = 1
            self._start_timestamp_updater()
            atexit.register(self.release)
            logger.debug(f"Acquired lock file: {self.lock_file_path}")
            return True

    def release(self):
        """
        Undo one :meth:`acquire`. The outermost release clears the record and
        drops the file lock. A no-op when nothing is held.
        """
        with self._mutex:
            if self._lock_fd is None:
                return
            self._depth -= 1
            if self._depth > 0:
                return

            fd = self._lock_fd
            self._lock_fd = None
            self._depth = 0

        self._stop_timestamp_updater()
        atexit.unregister(self.release)

        try:
            os.ftruncate(fd, 0)
        except OSError as e:
            logger.debug(f"Could not clear lock file content: {e}")
        try:
            _unlock_file(fd)
        except OSError as e:
            logger.error(f"Could not unlock {self.lock_file_path}: {e}")
        finally:
            os.close(fd)
        logger.debug(f"Released lock file: {self.lock_file_path}")

    def _start_timestamp_updater(self):
        if self._updater_thread is None or not self._updater_thread.is_alive():
            self._stop_event.clear()
            self._updater_thread = threading.Thread(target=self._timestamp_update_loop,
                                                    name="LockRefresher", daemon=True)
            self._updater_thread.start()

    def _stop_timestamp_updater(self):
        if self._updater_thread and self._updater_thread.is_alive():
            self._stop_event.set()
            self._updater_thread.join(timeout=5.0)
            if self._updater_thread.is_alive():
                logger.warning("Lock refresh thread did not stop within 5s.")
        self._updater_thread = None

    def _timestamp_update_loop(self):
        """
        Rewrite the record every half stale period while the lock is held.
        """
        update_interval = max(15, LOCK_STALE_TIMEOUT_SECONDS // 2)

        while not self._stop_event.wait(update_interval):
            fd = self._lock_fd
            if fd is None:
                break
            if not self._write_lock_content(fd):
                logger.error("Lock refresh failed. Other processes may treat the lock as stale.")
                break
