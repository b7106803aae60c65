import os
from datetime import datetime, timezone

import pytest

from compliance_agent.system import LockManager
from compliance_agent.system import lock_manager


@pytest.fixture
def lock_dir(tmp_path):
    return str(tmp_path)


def _content(lock):
    with open(lock.lock_file_path, encoding="utf-8") as f:
        return f.read()


def test_acquire_writes_pid_and_release_clears(lock_dir):
    lock = LockManager(lock_dir)

    assert lock.acquire() is True
    assert lock.is_held
    assert _content(lock).startswith(f"{os.getpid()}|")

    lock.release()
    assert not lock.is_held
    assert _content(lock) == ""


def test_lock_is_reentrant(lock_dir):
    lock = LockManager(lock_dir)

    assert lock.acquire()
    assert lock.acquire()
    lock.release()
    assert lock.is_held
    lock.release()
    assert not lock.is_held


def test_second_holder_is_refused(lock_dir):
    first = LockManager(lock_dir)
    second = LockManager(lock_dir)

    assert first.acquire()
    try:
        assert second.acquire() is False
    finally:
        first.release()
    assert second.acquire() is True
    second.release()


def test_stale_lock_from_dead_process_is_taken_over(lock_dir, monkeypatch):
    monkeypatch.setattr(lock_manager.psutil, "pid_exists", lambda pid: False)
    with open(os.path.join(lock_dir, lock_manager.LOCK_FILENAME), "w", encoding="utf-8") as f:
        f.write("999999|2024-05-01T12:00:00+00:00")

    lock = LockManager(lock_dir)
    assert lock.acquire() is True
    assert _content(lock).startswith(f"{os.getpid()}|")
    lock.release()


def test_fresh_lock_of_live_process_is_respected(lock_dir, monkeypatch):
    monkeypatch.setattr(lock_manager.psutil, "pid_exists", lambda pid: True)
    with open(os.path.join(lock_dir, lock_manager.LOCK_FILENAME), "w", encoding="utf-8") as f:
        f.write(f"{os.getpid() + 1}|{datetime.now(timezone.utc).isoformat()}")

    assert LockManager(lock_dir).acquire() is False


def test_old_timestamp_is_stale_even_if_pid_is_reused(lock_dir, monkeypatch):
    monkeypatch.setattr(lock_manager.psutil, "pid_exists", lambda pid: True)
    with open(os.path.join(lock_dir, lock_manager.LOCK_FILENAME), "w", encoding="utf-8") as f:
        f.write(f"{os.getpid() + 1}|2024-05-01T12:00:00")

    lock = LockManager(lock_dir)
    assert lock.acquire() is True
    lock.release()


def test_invalid_storage_path():
    with pytest.raises(ValueError):
        LockManager("/nonexistent/agent/data")

