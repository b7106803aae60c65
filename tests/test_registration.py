import pytest

from compliance_agent.config import StateManager
from compliance_agent.core import RegistrationHandshake
from compliance_agent.core.errors import (
    AlreadyRegisteredError,
    ApiError,
    AuthError,
    ConfigurationError,
    NetworkError,
    NotRegisteredError
)

from conftest import FakeAdapter, FakeApi


def _handshake(state_manager, api=None, adapter=None):
    return RegistrationHandshake(state_manager, api or FakeApi(), adapter or FakeAdapter(), agent_version="1.2.3")


def test_successful_registration(state_manager):
    api = FakeApi()
    user = _handshake(state_manager, api).register("magic-123", "eu")

    assert user.display_name == "Ada Lovelace"
    assert api.call_names() == ["login_with_magic_link", "get_me", "register"]
    assert api.calls[0][1] == ("magic-123",)

    stored = StateManager(state_manager.file_path)
    assert stored.access_token == "new-token"
    assert stored.region == "EU"
    assert stored.uuid
    assert stored.user.email == "ada@example.com"
    assert stored.app_version == "1.2.3"
    assert stored.last_checked_at == "2024-05-01T10:00:00Z"


def test_device_identifiers_are_sent(state_manager):
    api = FakeApi()
    _handshake(state_manager, api).register("magic-123", "NA")

    identifiers = api.calls[-1][1][0]
    assert identifiers.hardware_serial == "SER-1"
    assert identifiers.mac == "aa:bb:cc:dd:ee:ff"


def test_already_registered_is_rejected(registered_state):
    api = FakeApi()
    with pytest.raises(AlreadyRegisteredError):
        _handshake(registered_state, api).register("magic-123", "NA")
    assert api.calls == []


def test_invalid_region_is_rejected_before_any_call(state_manager):
    api = FakeApi()
    with pytest.raises(ConfigurationError):
        _handshake(state_manager, api).register("magic-123", "MARS")
    assert api.calls == []


def test_empty_token_is_rejected(state_manager):
    with pytest.raises(ValueError):
        _handshake(state_manager).register("   ", "NA")


def test_rejected_token_stores_no_credential(state_manager):
    api = FakeApi()
    api.errors["login_with_magic_link"] = AuthError("magic token not found or expired", 404, "MAGIC_TOKEN_NOT_FOUND")

    with pytest.raises(AuthError):
        _handshake(state_manager, api).register("stale", "NA")
    assert not StateManager(state_manager.file_path).is_registered


def test_missing_access_token_is_api_error(state_manager):
    with pytest.raises(ApiError):
        _handshake(state_manager, FakeApi(login_with_magic_link={})).register("magic-123", "NA")
    assert not state_manager.is_registered


def test_profile_failure_removes_credential(state_manager):
    api = FakeApi()
    api.errors["get_me"] = NetworkError("Request timed out after 300 seconds.")

    with pytest.raises(NetworkError):
        _handshake(state_manager, api).register("magic-123", "NA")
    stored = StateManager(state_manager.file_path)
    assert stored.access_token == ""
    assert stored.user is None


def test_device_registration_failure_can_be_resumed(state_manager):
    api = FakeApi()
    api.errors["register"] = NetworkError("Unable to connect to the server.")
    handshake = _handshake(state_manager, api)

    with pytest.raises(NetworkError):
        handshake.register("magic-123", "NA")
    assert state_manager.is_registered
    assert state_manager.app_version == ""

    del api.errors["register"]
    user = handshake.register("", "", resume=True)

    assert user.email == "ada@example.com"
    assert state_manager.app_version == "1.2.3"
    assert api.call_names().count("login_with_magic_link") == 1


def test_resume_without_credential(state_manager):
    with pytest.raises(NotRegisteredError):
        _handshake(state_manager).register("", "", resume=True)
