import datetime
import json

import pytest

from compliance_agent.config import ConfigManager, StateManager
from compliance_agent.core.models import DeviceIdentifiers, TelemetrySnapshot
from compliance_agent.monitoring.osquery_client import ProbeError

NOW = datetime.datetime(2024, 5, 1, 12, 0, 0, tzinfo=datetime.timezone.utc)


def make_config(tmp_path, **overrides):
    values = {"storage.base_dir": str(tmp_path / "agent-home")}
    values.update(overrides)
    return ConfigManager(overrides=values, environ={})


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def state_manager(config):
    return StateManager(config.state_file_path)


@pytest.fixture
def registered_state(state_manager):
    state_manager.update(access_token="tok", uuid="u-1", region="NA")
    return state_manager


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        if text is None:
            text = json.dumps(payload) if payload is not None else ""
        self.text = text

    def json(self):
        return json.loads(self.text)


class FakeSession:
    """Routes (method, path suffix) to a FakeResponse or an exception."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []

    def request(self, method, url, headers=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "headers": headers, "json": json, "timeout": timeout})
        for (route_method, path), result in self.routes.items():
            if route_method == method and url.endswith(path):
                if isinstance(result, BaseException):
                    raise result
                return result
        return FakeResponse(404, {"message": "Not Found"})


class FakeEngine:
    """
    Stands in for TelemetryEngine. Queries and commands are matched by
    substring; a value that is an exception is raised.
    """

    def __init__(self, queries=None, commands=None, binary_error=None):
        self.queries = queries or {}
        self.commands = commands or {}
        self.binary_error = binary_error
        self.session_commands = []
        self.executed = []

    @property
    def binary_path(self):
        if self.binary_error is not None:
            raise self.binary_error
        return "/usr/bin/osqueryi"

    @staticmethod
    def _lookup(table, key):
        for fragment, result in table.items():
            if fragment in key:
                if isinstance(result, BaseException):
                    raise result
                return result
        raise ProbeError(f"no fixture for {key}")

    def run_query(self, sql):
        self.executed.append(sql)
        return self._lookup(self.queries, sql)

    def run_command(self, command):
        self.executed.append(command)
        return self._lookup(self.commands, command)

    def run_session_command(self, command, session_user):
        self.session_commands.append(command)
        return self.run_command(command)


class FakeAdapter:
    def __init__(self, collect_error=None, identifiers=None):
        self.collect_error = collect_error
        self.identifiers = identifiers or DeviceIdentifiers("SER-1", "BRD-1", "aa:bb:cc:dd:ee:ff")
        self.collect_calls = 0

    def collect(self, agent_version):
        self.collect_calls += 1
        if self.collect_error is not None:
            raise self.collect_error
        snapshot = TelemetrySnapshot(agent_version=agent_version, platform="LINUX")
        snapshot.firewall_status = {"passed": 1}
        return snapshot

    def device_identifiers(self):
        return self.identifiers

    def debug_info(self):
        return {"platform": "LINUX_DEBIAN"}


class FakeApi:
    """Stands in for HttpClient. Set ``errors[name]`` to make a call raise."""

    def __init__(self, **results):
        self.results = {
            "login_with_magic_link": {"accessToken": "new-token"},
            "get_me": {"id": 7, "email": "ada@example.com", "firstName": "Ada", "lastName": "Lovelace"},
            "register": {"lastcheckedAt": "2024-05-01T10:00:00Z"},
            "sync": {"data": {"lastcheckedAt": "2024-05-01T12:00:00Z"}},
            "get_init_data": {"winAvServicesMatchList": ["WinDefend"]},
        }
        self.results.update(results)
        self.errors = {}
        self.calls = []

    def _call(self, name, *args):
        self.calls.append((name, args))
        if name in self.errors:
            raise self.errors[name]
        return self.results[name]

    def login_with_magic_link(self, token):
        return self._call("login_with_magic_link", token)

    def get_me(self):
        return self._call("get_me")

    def register(self, identifiers):
        return self._call("register", identifiers)

    def sync(self, snapshot):
        return self._call("sync", snapshot)

    def get_init_data(self):
        return self._call("get_init_data")

    def call_names(self):
        return [name for name, _ in self.calls]
