import datetime
import threading

from compliance_agent.config import StateManager
from compliance_agent.core import SyncOrchestrator, SyncState, SyncStatus, recover_stale_running
from compliance_agent.core.errors import ApiError, EngineUnavailableError, NetworkError
from compliance_agent.utils import format_timestamp

from conftest import NOW, FakeAdapter, FakeApi, make_config


def _orchestrator(config, state_manager, api=None, adapter=None):
    return SyncOrchestrator(
        state_manager=state_manager,
        http_client=api or FakeApi(),
        adapter=adapter or FakeAdapter(),
        config=config,
        agent_version="1.2.3",
        clock=lambda: NOW,
    )


def _ago(**delta):
    return format_timestamp(NOW - datetime.timedelta(**delta))


def test_not_registered_does_nothing(config, state_manager):
    api = FakeApi()
    outcome = _orchestrator(config, state_manager, api).trigger()

    assert outcome.status == SyncStatus.NOT_REGISTERED
    assert api.calls == []
    assert state_manager.sync_state == SyncState.NEVER


def test_successful_sync_persists_result(config, registered_state):
    api = FakeApi()
    adapter = FakeAdapter()
    outcome = _orchestrator(config, registered_state, api, adapter).trigger()

    assert outcome.status == SyncStatus.SUCCESS
    assert outcome.last_checked_at == "2024-05-01T12:00:00Z"
    assert api.call_names() == ["get_init_data", "sync"]
    assert adapter.collect_calls == 1

    reloaded = StateManager(registered_state.file_path)
    assert reloaded.sync_state == SyncState.SUCCESS
    assert reloaded.last_checked_at == "2024-05-01T12:00:00Z"
    assert reloaded.last_sync_attempted_at == "2024-05-01T12:00:00Z"
    assert reloaded.compliance_data == api.results["sync"]
    assert reloaded.win_av_services_match_list == ["WinDefend"]


def test_init_data_fetched_only_once(config, registered_state):
    registered_state.set_win_av_services_match_list([])
    api = FakeApi()
    _orchestrator(config, registered_state, api).trigger()

    assert api.call_names() == ["sync"]


def test_snapshot_payload_carries_version_and_manual_flag(config, registered_state):
    api = FakeApi()
    _orchestrator(config, registered_state, api).trigger(forced=True)

    snapshot = api.calls[-1][1][0]
    payload = snapshot.to_payload()
    assert payload["drataAgentVersion"] == "1.2.3"
    assert payload["manualRun"] is True
    assert payload["rawQueryResults"] == {"firewallStatus": {"passed": 1}}


def test_recent_attempt_is_throttled(config, registered_state):
    registered_state.update(last_sync_attempted_at=_ago(minutes=5))
    api = FakeApi()
    outcome = _orchestrator(config, registered_state, api).trigger()

    assert outcome.status == SyncStatus.SKIPPED_THROTTLED
    assert outcome.remaining_wait_minutes == 10
    assert api.calls == []
    assert registered_state.last_sync_attempted_at == _ago(minutes=5)


def test_attempt_exactly_at_threshold_runs(config, registered_state):
    registered_state.update(last_sync_attempted_at=_ago(minutes=15))
    outcome = _orchestrator(config, registered_state).trigger()

    assert outcome.status == SyncStatus.SUCCESS


def test_recent_success_is_skipped(config, registered_state):
    registered_state.update(last_sync_attempted_at=_ago(hours=2), last_checked_at=_ago(hours=3))
    outcome = _orchestrator(config, registered_state).trigger()

    assert outcome.status == SyncStatus.SKIPPED_RECENT_SUCCESS
    assert outcome.last_checked_at == _ago(hours=3)


def test_forced_sync_bypasses_throttles(config, registered_state):
    registered_state.update(last_sync_attempted_at=_ago(minutes=1), last_checked_at=_ago(hours=1))
    api = FakeApi()
    outcome = _orchestrator(config, registered_state, api).trigger(forced=True)

    assert outcome.status == SyncStatus.SUCCESS
    assert api.calls[-1][1][0].manual_run is True


def test_running_state_blocks_even_forced_sync(config, registered_state):
    registered_state.set_sync_state(SyncState.RUNNING)
    api = FakeApi()
    outcome = _orchestrator(config, registered_state, api).trigger(forced=True)

    assert outcome.status == SyncStatus.SKIPPED_RUNNING
    assert api.calls == []
    assert registered_state.sync_state == SyncState.RUNNING


def test_running_state_is_persisted_before_upload(config, registered_state):
    observed = []

    class RecordingApi(FakeApi):
        def sync(self, snapshot):
            observed.append(StateManager(registered_state.file_path).sync_state)
            return super().sync(snapshot)

    _orchestrator(config, registered_state, RecordingApi()).trigger()

    assert observed == [SyncState.RUNNING]


def test_init_failure_ends_in_error(config, registered_state):
    api = FakeApi()
    api.errors["get_init_data"] = NetworkError("Unable to connect to the server.")
    adapter = FakeAdapter()
    outcome = _orchestrator(config, registered_state, api, adapter).trigger()

    assert outcome.status == SyncStatus.ERROR
    assert isinstance(outcome.error, NetworkError)
    assert adapter.collect_calls == 0
    assert registered_state.sync_state == SyncState.ERROR
    assert not registered_state.is_init_data_ready


def test_collection_failure_ends_in_error(config, registered_state):
    api = FakeApi()
    adapter = FakeAdapter(collect_error=EngineUnavailableError("osqueryi binary not found"))
    outcome = _orchestrator(config, registered_state, api, adapter).trigger()

    assert outcome.status == SyncStatus.ERROR
    assert "osqueryi" in outcome.message
    assert "sync" not in api.call_names()
    assert registered_state.sync_state == SyncState.ERROR


def test_upload_failure_keeps_previous_checked_at(config, registered_state):
    registered_state.update(last_checked_at=_ago(hours=30))
    api = FakeApi()
    api.errors["sync"] = ApiError("Bad Request", status_code=400)
    outcome = _orchestrator(config, registered_state, api).trigger()

    assert outcome.status == SyncStatus.ERROR
    assert registered_state.sync_state == SyncState.ERROR
    assert registered_state.last_checked_at == _ago(hours=30)
    assert registered_state.last_sync_attempted_at == format_timestamp(NOW)


def test_unexpected_exception_ends_in_error(config, registered_state):
    adapter = FakeAdapter(collect_error=RuntimeError("boom"))
    outcome = _orchestrator(config, registered_state, adapter=adapter).trigger()

    assert outcome.status == SyncStatus.ERROR
    assert isinstance(outcome.error, RuntimeError)
    assert registered_state.sync_state == SyncState.ERROR


def test_missing_checked_at_does_not_clear_stored_value(config, registered_state):
    registered_state.update(last_checked_at=_ago(hours=30))
    api = FakeApi(sync={"data": {}})
    outcome = _orchestrator(config, registered_state, api).trigger()

    assert outcome.status == SyncStatus.SUCCESS
    assert registered_state.last_checked_at == _ago(hours=30)


def test_zero_thresholds_never_throttle(tmp_path):
    config = make_config(tmp_path, **{"sync.min_minutes_between_syncs": 0, "sync.min_hours_since_last_sync": 0})
    state_manager = StateManager(config.state_file_path)
    state_manager.update(access_token="tok", last_sync_attempted_at=format_timestamp(NOW),
                         last_checked_at=format_timestamp(NOW))
    outcome = _orchestrator(config, state_manager).trigger()

    assert outcome.status == SyncStatus.SUCCESS


def test_recover_stale_running(registered_state):
    assert recover_stale_running(registered_state) is False

    registered_state.set_sync_state(SyncState.RUNNING)
    assert recover_stale_running(registered_state) is True
    assert StateManager(registered_state.file_path).sync_state == SyncState.ERROR


def test_future_attempt_timestamp_does_not_throttle(config, registered_state):
    registered_state.update(last_sync_attempted_at=format_timestamp(NOW + datetime.timedelta(days=2)))
    api = FakeApi()

    outcome = _orchestrator(config, registered_state, api).trigger()

    assert outcome.status == SyncStatus.SUCCESS
    assert "sync" in api.call_names()
    assert StateManager(registered_state.file_path).last_sync_attempted_at == "2024-05-01T12:00:00Z"


def test_forced_sync_replaces_future_attempt_timestamp(config, registered_state):
    registered_state.update(last_sync_attempted_at=format_timestamp(NOW + datetime.timedelta(days=2)),
                            last_checked_at=_ago(hours=1))
    orchestrator = _orchestrator(config, registered_state)

    assert orchestrator.trigger(forced=True).status == SyncStatus.SUCCESS
    assert registered_state.last_sync_attempted_at == "2024-05-01T12:00:00Z"

    later = _orchestrator(config, registered_state)
    later.clock = lambda: NOW + datetime.timedelta(minutes=20)
    registered_state.update(last_checked_at=_ago(hours=30))
    assert later.trigger().status == SyncStatus.SUCCESS


def test_future_checked_at_does_not_skip(config, registered_state):
    registered_state.update(last_checked_at=format_timestamp(NOW + datetime.timedelta(hours=5)))

    assert _orchestrator(config, registered_state).trigger().status == SyncStatus.SUCCESS


def test_concurrent_trigger_in_same_process_is_skipped(config, registered_state):
    registered_state.set_win_av_services_match_list([])
    in_policy = threading.Event()
    resume = threading.Event()
    clock_calls = []

    def blocking_clock():
        clock_calls.append(True)
        if len(clock_calls) == 1:
            in_policy.set()
            resume.wait(5)
        return NOW

    api = FakeApi()
    adapter = FakeAdapter()
    orchestrator = SyncOrchestrator(
        state_manager=registered_state,
        http_client=api,
        adapter=adapter,
        config=config,
        agent_version="1.2.3",
        clock=blocking_clock,
    )
    outcomes = []
    first = threading.Thread(target=lambda: outcomes.append(orchestrator.trigger()))
    first.start()
    try:
        assert in_policy.wait(5)
        assert registered_state.sync_state == SyncState.NEVER
        second = orchestrator.trigger(forced=True)
    finally:
        resume.set()
        first.join(5)

    assert second.status == SyncStatus.SKIPPED_RUNNING
    assert not first.is_alive()
    assert outcomes[0].status == SyncStatus.SUCCESS
    assert adapter.collect_calls == 1
    assert api.call_names() == ["sync"]
