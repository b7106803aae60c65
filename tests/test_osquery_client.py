import subprocess

import pytest

from compliance_agent.core.errors import EngineUnavailableError
from compliance_agent.monitoring import osquery_client
from compliance_agent.monitoring.osquery_client import (
    ProbeError,
    TelemetryEngine,
    find_osquery_binary,
    validate_binary_path
)
from compliance_agent.system.session_user import SessionUser


class FakeRunner:
    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((argv, kwargs))
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        returncode, stdout, stderr = result
        return subprocess.CompletedProcess(argv, returncode, stdout, stderr)


@pytest.fixture
def binary(tmp_path):
    path = tmp_path / "bin" / "osqueryi"
    path.parent.mkdir()
    path.write_text("")
    return str(path)


def _engine(binary, runner, os_name="posix"):
    return TelemetryEngine(binary_path=binary, probe_timeout=30, os_name=os_name, runner=runner, environ={})


def test_validate_accepts_existing_binary(binary):
    assert validate_binary_path(binary, binary_name="osqueryi") == binary


@pytest.mark.parametrize("path", ["", None, "/usr/bin/osqueryd", "/tmp/x;y/osqueryi", "/nonexistent/osqueryi"])
def test_validate_rejects_unusable_paths(path):
    with pytest.raises(EngineUnavailableError):
        validate_binary_path(path, binary_name="osqueryi")


def test_find_prefers_configured_then_environment(monkeypatch):
    monkeypatch.setattr(osquery_client.shutil, "which", lambda name: "/usr/bin/osqueryi")
    environ = {"CLI_OSQUERYI_PATH": "/env/osqueryi"}

    assert find_osquery_binary("/conf/osqueryi", environ, "posix") == "/conf/osqueryi"
    assert find_osquery_binary(None, environ, "posix") == "/env/osqueryi"
    assert find_osquery_binary(None, {}, "posix") == "/usr/bin/osqueryi"


def test_find_returns_none_when_nothing_installed(monkeypatch):
    monkeypatch.setattr(osquery_client.shutil, "which", lambda name: None)
    monkeypatch.setattr(osquery_client.os.path, "isfile", lambda path: False)

    assert find_osquery_binary(None, {}, "posix") is None


def test_missing_binary_is_engine_unavailable(monkeypatch):
    monkeypatch.setattr(osquery_client, "find_osquery_binary", lambda *args: None)
    engine = TelemetryEngine(runner=FakeRunner(), environ={})

    with pytest.raises(EngineUnavailableError):
        engine.run_query("SELECT 1")


def test_run_query_invokes_osquery_without_shell(binary):
    runner = FakeRunner((0, '[{"version": "5.12.1"}]', ""))
    rows = _engine(binary, runner).run_query("SELECT version FROM osquery_info")

    assert rows == [{"version": "5.12.1"}]
    argv, kwargs = runner.calls[0]
    assert argv == [binary, "--json", "SELECT version FROM osquery_info"]
    assert kwargs["timeout"] == 30
    assert kwargs["check"] is False


@pytest.mark.parametrize("result", [(1, "", "no such table: nope"), (0, "not json", ""), (0, '{"a": 1}', "")])
def test_run_query_failures_are_probe_errors(binary, result):
    with pytest.raises(ProbeError):
        _engine(binary, FakeRunner(result)).run_query("SELECT * FROM nope")


def test_run_query_exec_failure_is_engine_unavailable(binary):
    with pytest.raises(EngineUnavailableError):
        _engine(binary, FakeRunner(PermissionError("denied"))).run_query("SELECT 1")


def test_timeout_is_probe_error(binary):
    runner = FakeRunner(subprocess.TimeoutExpired(["sh"], 30))
    with pytest.raises(ProbeError, match="Timed out"):
        _engine(binary, runner).run_command("sleep 999")


def test_run_command_uses_platform_shell(binary):
    runner = FakeRunner((0, "running\n", ""), (0, "ok", ""))
    assert _engine(binary, runner).run_command("firewall-cmd --state") == "running"
    assert runner.calls[0][0] == ["sh", "-c", "firewall-cmd --state"]

    _engine(binary, runner, os_name="nt").run_command("netsh advfirewall show allprofiles")
    assert runner.calls[1][0][:2] == ["cmd", "/c"]


def test_run_command_stderr_is_failure(binary):
    with pytest.raises(ProbeError, match="stderr"):
        _engine(binary, FakeRunner((0, "partial", "warning: something"))).run_command("gsettings get a b")


def test_session_command_runs_as_session_user(binary, monkeypatch):
    monkeypatch.setattr(osquery_client, "is_privileged", lambda: True)
    runner = FakeRunner((0, "true", ""))
    user = SessionUser(name="alice", uid=1000, home="/home/alice")

    output = _engine(binary, runner).run_session_command("gsettings get org.gnome.system.location enabled", user)

    assert output == "true"
    assert runner.calls[0][0] == [
        "sudo", "-u", "alice", "env",
        "XDG_RUNTIME_DIR=/run/user/1000",
        "DBUS_SESSION_BUS_ADDRESS=unix:path=/run/user/1000/bus",
        "sh", "-c", "gsettings get org.gnome.system.location enabled",
    ]


def test_session_command_falls_back_to_bare_command(binary, monkeypatch):
    monkeypatch.setattr(osquery_client, "is_privileged", lambda: True)
    runner = FakeRunner((1, "", "sudo: unknown user"), (0, "false", ""))
    user = SessionUser(name="alice", uid=1000)

    assert _engine(binary, runner).run_session_command("gsettings get a b", user) == "false"
    assert runner.calls[1][0] == ["sh", "-c", "gsettings get a b"]


def test_session_command_without_privileges_runs_directly(binary, monkeypatch):
    monkeypatch.setattr(osquery_client, "is_privileged", lambda: False)
    runner = FakeRunner((0, "true", ""))

    _engine(binary, runner).run_session_command("gsettings get a b", SessionUser(name="alice", uid=1000))
    assert runner.calls[0][0] == ["sh", "-c", "gsettings get a b"]
