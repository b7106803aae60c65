import os
import threading

import pytest

from compliance_agent.config import StateManager
from compliance_agent.core import Agent, Scheduler, SyncState, SyncStatus
from compliance_agent.core.errors import AgentError, ConfigurationError, RegistrationError
from compliance_agent.system import LockManager

from conftest import FakeAdapter, FakeApi, make_config


def _agent(config, api=None, **kwargs):
    return Agent(config, http_client=api or FakeApi(), adapter=FakeAdapter(), **kwargs)


def _foreign_lock(config):
    return LockManager(os.path.join(config.base_dir, "data"))


def test_register_then_status(config):
    agent = _agent(config)
    user = agent.register("magic-123", "NA")

    assert user.email == "ada@example.com"
    state = agent.status()
    assert state.is_registered
    assert state.region == "NA"
    assert not agent.lock_manager.is_held


def test_unregister_clears_state(config):
    agent = _agent(config)
    agent.state_manager.update(access_token="tok", region="EU", sync_state=SyncState.SUCCESS)

    agent.unregister()

    assert not agent.status().is_registered
    assert StateManager(config.state_file_path).region == ""


def test_sync_requires_registration(config):
    api = FakeApi()
    outcome = _agent(config, api).sync()

    assert outcome.status == SyncStatus.NOT_REGISTERED
    assert api.calls == []


def test_sync_reads_state_written_by_another_process(config):
    agent = _agent(config)
    StateManager(config.state_file_path).update(access_token="tok", region="NA")

    outcome = agent.sync()

    assert outcome.status == SyncStatus.SUCCESS
    assert agent.status().sync_state == SyncState.SUCCESS


def test_stale_running_state_is_recovered_at_startup(config):
    StateManager(config.state_file_path).update(access_token="tok", sync_state=SyncState.RUNNING)

    agent = _agent(config)

    assert agent.status().sync_state == SyncState.ERROR


def test_operations_refused_while_another_process_holds_the_lock(config):
    agent = _agent(config)
    agent.state_manager.update(access_token="tok")
    other = _foreign_lock(config)
    assert other.acquire()
    try:
        assert agent.sync().status == SyncStatus.SKIPPED_RUNNING
        with pytest.raises(RegistrationError):
            agent.register("magic-123", "NA")
        with pytest.raises(RegistrationError):
            agent.unregister()
        with pytest.raises(AgentError):
            agent.run_daemon(interval_hours=1, stop_event=threading.Event())
    finally:
        other.release()
    assert agent.status().is_registered


def test_daemon_stops_and_releases_lock(config):
    scheduler = Scheduler()
    agent = _agent(config, scheduler=scheduler)
    stop_event = threading.Event()
    stop_event.set()

    agent.run_daemon(interval_hours=1, stop_event=stop_event)

    assert not scheduler.is_running
    assert not agent.lock_manager.is_held


def test_daemon_runs_initial_sync(tmp_path):
    config = make_config(tmp_path, **{"daemon.initial_delay_sec": 0})
    synced = threading.Event()

    class SignallingApi(FakeApi):
        def sync(self, snapshot):
            result = super().sync(snapshot)
            synced.set()
            return result

    agent = _agent(config, SignallingApi())
    agent.state_manager.update(access_token="tok", region="NA")
    stop_event = threading.Event()
    daemon = threading.Thread(target=agent.run_daemon, kwargs={"interval_hours": 1, "stop_event": stop_event})
    daemon.start()
    try:
        assert synced.wait(10)
    finally:
        agent.request_stop()
        daemon.join(10)

    assert not daemon.is_alive()
    assert StateManager(config.state_file_path).sync_state == SyncState.SUCCESS


@pytest.mark.parametrize("interval", [0, -2, True])
def test_daemon_rejects_invalid_interval(config, interval):
    agent = _agent(config)
    with pytest.raises(ConfigurationError):
        agent.run_daemon(interval_hours=interval, stop_event=threading.Event())
    assert not agent.lock_manager.is_held


def test_debug_info(config):
    info = _agent(config).debug_info()

    assert info["state_file"] == config.state_file_path
    assert info["registered"] is False
    assert info["region"] == "NA"
    assert info["platform"] == {"platform": "LINUX_DEBIAN"}
