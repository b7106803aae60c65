import pytest
import requests

from compliance_agent.communication import HttpClient, classify_error_response, resolve_base_url
from compliance_agent.core.errors import AccountError, ApiError, AuthError, ConfigurationError, NetworkError
from compliance_agent.core.models import DeviceIdentifiers, TelemetrySnapshot

from conftest import FakeResponse, FakeSession, make_config


def _client(config, state_manager, routes=None):
    session = FakeSession(routes)
    return HttpClient(config, state_manager, session=session), session


def test_resolve_base_url():
    assert resolve_base_url("PROD", "NA") == "https://agent.drata.com"
    assert resolve_base_url("PROD", "EU") == "https://agent.eu.drata.com"
    assert resolve_base_url("prod", "apac") == "https://agent.apac.drata.com"
    assert resolve_base_url("LOCAL", "EU") == "http://localhost:3001"
    with pytest.raises(ConfigurationError):
        resolve_base_url("STAGING", "NA")


def test_stored_region_wins_over_configured(tmp_path, state_manager):
    config = make_config(tmp_path, **{"api.region": "APAC"})
    client, _ = _client(config, state_manager)
    assert client.base_url == "https://agent.apac.drata.com"

    state_manager.set_region("EU")
    assert client.base_url == "https://agent.eu.drata.com"


def test_authenticated_request_headers(config, registered_state):
    client, session = _client(config, registered_state, {("GET", "/users/me"): FakeResponse(200, {"id": 1})})

    assert client.get_me() == {"id": 1}
    call = session.calls[0]
    assert call["url"] == "https://agent.drata.com/users/me"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["headers"]["Correlation-Id"] == "u-1"
    assert call["headers"]["Content-Type"] == "application/json"
    assert call["headers"]["User-Agent"].startswith("Compliance-Agent/")
    assert call["timeout"] == 300


def test_magic_link_is_quoted_and_unauthenticated(config, registered_state):
    client, session = _client(config, registered_state,
                              {("POST", "/auth/magic-link/a%2Fb%3Fc"): FakeResponse(201, {"accessToken": "x"})})

    assert client.login_with_magic_link("a/b?c") == {"accessToken": "x"}
    assert "Authorization" not in session.calls[0]["headers"]


def test_empty_success_body_returns_empty_dict(config, registered_state):
    client, _ = _client(config, registered_state, {("POST", "/agentv2/register"): FakeResponse(204, text="")})

    assert client.register(DeviceIdentifiers("S", "B", "M")) == {}


def test_register_and_sync_payloads(config, registered_state):
    routes = {
        ("POST", "/agentv2/register"): FakeResponse(201, {"lastcheckedAt": "2024-05-01T10:00:00Z"}),
        ("POST", "/agentv2/sync"): FakeResponse(201, {"data": {"lastcheckedAt": "2024-05-01T12:00:00Z"}}),
    }
    client, session = _client(config, registered_state, routes)

    client.register(DeviceIdentifiers("SER", "BRD", "aa:bb"))
    snapshot = TelemetrySnapshot(agent_version="1.0.0", platform="MACOS")
    snapshot.hw_serial = {"hardware_serial": "SER"}
    client.sync(snapshot)

    assert session.calls[0]["json"] == {
        "hwSerial": {"hardware_serial": "SER", "board_serial": "BRD"},
        "macAddress": {"mac": "aa:bb"},
    }
    assert session.calls[1]["json"] == {
        "drataAgentVersion": "1.0.0",
        "platform": "MACOS",
        "manualRun": False,
        "rawQueryResults": {"hwSerial": {"hardware_serial": "SER"}},
    }


def test_invalid_json_on_success_is_api_error(config, registered_state):
    client, _ = _client(config, registered_state, {("GET", "/agentv2/init"): FakeResponse(200, text="<html>")})

    with pytest.raises(ApiError, match="Invalid JSON"):
        client.get_init_data()


@pytest.mark.parametrize("exc", [requests.exceptions.Timeout("slow"), requests.exceptions.ConnectionError("down")])
def test_transport_failures_are_network_errors(config, registered_state, exc):
    client, _ = _client(config, registered_state, {("POST", "/agentv2/sync"): exc})

    with pytest.raises(NetworkError):
        client.sync(TelemetrySnapshot(agent_version="1.0.0", platform="LINUX"))


def test_error_response_is_raised(config, registered_state):
    body = {"code": "ACCOUNT_PENDING", "message": "pending"}
    client, _ = _client(config, registered_state, {("POST", "/agentv2/sync"): FakeResponse(403, body)})

    with pytest.raises(AccountError) as exc_info:
        client.sync(TelemetrySnapshot(agent_version="1.0.0", platform="LINUX"))
    assert exc_info.value.status_code == 403
    assert exc_info.value.code == "ACCOUNT_PENDING"


def test_classify_known_auth_code():
    error = classify_error_response(404, '{"code": "MAGIC_TOKEN_NOT_FOUND", "message": "Not found"}')
    assert isinstance(error, AuthError)
    assert "magic token not found" in str(error)
    assert error.code == "MAGIC_TOKEN_NOT_FOUND"


def test_classify_account_code_wins_over_401():
    error = classify_error_response(401, '{"code": "ACCOUNT_USER_DELETED"}')
    assert isinstance(error, AccountError)


def test_classify_bare_401():
    assert isinstance(classify_error_response(401, ""), AuthError)
    assert isinstance(classify_error_response(401, '{"message": "Unauthorized"}'), AuthError)


def test_classify_message_with_secondary():
    error = classify_error_response(400, '{"message": "Bad Request", "secondaryMessage": "missing field"}')
    assert type(error) is ApiError
    assert str(error) == "Bad Request: missing field"
    assert error.status_code == 400


def test_classify_unstructured_body():
    error = classify_error_response(502, "Bad Gateway")
    assert type(error) is ApiError
    assert "502" in str(error)
