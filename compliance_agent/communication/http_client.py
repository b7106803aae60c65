import json
import platform
from typing import Dict, Any, Optional, TYPE_CHECKING
from urllib.parse import quote

import requests

from compliance_agent.core.errors import (
    AccountError,
    ApiError,
    AuthError,
    ConfigurationError,
    NetworkError
)
from compliance_agent.utils import get_logger
from compliance_agent.version import __version__

if TYPE_CHECKING:
    from compliance_agent.config import ConfigManager, StateManager
    from compliance_agent.core.models import DeviceIdentifiers, TelemetrySnapshot

logger = get_logger(__name__)

API_BASE_URLS: Dict[str, Dict[str, str]] = {
    "LOCAL": {
        "NA": "http://localhost:3000",
        "EU": "http://localhost:3001",
        "APAC": "http://localhost:3002",
    },
    "DEV": {
        "NA": "https://agent.dev.drata.com",
        "EU": "https://agent.dev.drata.com",
        "APAC": "https://agent.dev.drata.com",
    },
    "QA": {
        "NA": "https://agent.qa.drata.com",
        "EU": "https://agent.qa.drata.com",
        "APAC": "https://agent.qa.drata.com",
    },
    "PROD": {
        "NA": "https://agent.drata.com",
        "EU": "https://agent.eu.drata.com",
        "APAC": "https://agent.apac.drata.com",
    },
}

AUTH_ERROR_MESSAGES: Dict[str, str] = {
    "MAGIC_TOKEN_NOT_FOUND": "magic token not found or expired. Please request a new registration link",
    "REFRESH_TOKEN_NOT_FOUND": "refresh token not found. Please register the agent",
    "TOKEN_EXPIRED": "authorization has expired. Please register the agent again",
}

ACCOUNT_ERROR_MESSAGES: Dict[str, str] = {
    "ACCOUNT_PENDING": "account configuration is being completed. Please try again in a few minutes",
    "ACCOUNT_MAINTENANCE": "the service is under maintenance. Please try again in a few minutes",
    "ACCOUNT_ADMIN_DISABLED": "your company's account is disabled. Please contact your system administrator",
    "ACCOUNT_NON_PAYMENT": "your company's account is disabled. Please contact your system administrator",
    "ACCOUNT_USER_DELETED": "your user account was deleted. Please contact your system administrator",
}


def resolve_base_url(target_env: str, region: str) -> str:
    """
    Looks up the API host for an environment and region.

    :param target_env: One of LOCAL, DEV, QA, PROD
    :type target_env: str
    :param region: One of NA, EU, APAC
    :type region: str
    :return: Base URL without a trailing slash
    :rtype: str
    :raises ConfigurationError: If the combination is unknown
    """
    try:
        return API_BASE_URLS[str(target_env).upper()][str(region).upper()]
    except KeyError:
        raise ConfigurationError(f"No API host for environment '{target_env}' and region '{region}'") from None


def classify_error_response(status_code: int, body: str) -> ApiError:
    """
    Maps a failed API response to an exception.

    Structured error codes win over the HTTP status; a 401 without a known
    code is an auth error; otherwise the body's message is used.

    :param status_code: HTTP status
    :type status_code: int
    :param body: Raw response body
    :type body: str
    :return: The exception to raise
    :rtype: ApiError
    """
    try:
        data = json.loads(body) if body else None
    except ValueError:
        data = None

    if not isinstance(data, dict):
        if status_code == 401:
            return AuthError("unauthorized: please register the agent or check your credentials", status_code)
        return ApiError(f"API error (status {status_code}): {body}", status_code)

    code = data.get("code")
    if code in AUTH_ERROR_MESSAGES:
        return AuthError(AUTH_ERROR_MESSAGES[code], status_code, code)
    if code in ACCOUNT_ERROR_MESSAGES:
        return AccountError(ACCOUNT_ERROR_MESSAGES[code], status_code, code)

    if status_code == 401:
        return AuthError("unauthorized: please register the agent or check your credentials", status_code, code)

    message = data.get("message")
    if message:
        secondary = data.get("secondaryMessage")
        if secondary:
            message = f"{message}: {secondary}"
        return ApiError(str(message), status_code, code)

    return ApiError(f"API error (status {status_code}): {body}", status_code, code)


class HttpClient:
    """
    HTTP client for the compliance API.

    Reads the bearer token, correlation id and region from the state store
    but never writes to it; callers persist what they need from the returned
    dicts.

    :ivar config: The configuration manager instance.
    :ivar state_manager: The agent state store.
    :ivar timeout: The request timeout in seconds.
    """

    def __init__(self, config: 'ConfigManager', state_manager: 'StateManager',
                 session: Optional[requests.Session] = None):
        """
        Initializes the HTTP client.

        :param config: The configuration manager instance.
        :type config: ConfigManager
        :param state_manager: Store holding the token, uuid and region.
        :type state_manager: StateManager
        :param session: Session to send requests with. A new one is created when omitted.
        :type session: Optional[requests.Session]
        """
        self.config = config
        self.state_manager = state_manager
        self.session = session if session is not None else requests.Session()
        self.timeout = self.config.get('http_client.request_timeout_sec', 300)
        self.agent_version = self.config.get('agent.version', __version__)
        logger.debug(f"HTTP client initialized. Timeout: {self.timeout}s")

    @property
    def base_url(self) -> str:
        """Base URL for the stored region, falling back to the configured one."""
        region = self.state_manager.region or self.config.get('api.region', 'NA')
        return resolve_base_url(self.config.get('api.target_env', 'PROD'), region)

    def _build_headers(self, authenticated: bool) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': f"Compliance-Agent/{self.agent_version} ({platform.system().lower()})",
        }
        correlation_id = self.state_manager.uuid
        if correlation_id:
            headers['Correlation-Id'] = correlation_id
        access_token = self.state_manager.access_token
        if authenticated and access_token:
            headers['Authorization'] = f"Bearer {access_token}"
        return headers

    def _make_request(self, method: str, endpoint: str, authenticated: bool = True,
                      payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Sends one request and parses the JSON response.

        :param method: HTTP method
        :type method: str
        :param endpoint: API path starting with '/'
        :type endpoint: str
        :param authenticated: Attach the cached bearer token
        :type authenticated: bool
        :param payload: JSON body
        :type payload: Optional[Dict[str, Any]]
        :return: Parsed response object; empty for responses without a body
        :rtype: Dict[str, Any]
        :raises NetworkError: On timeouts and connection failures
        :raises ApiError: On error responses or an unparsable success body
        """
        full_url = f"{self.base_url}{endpoint}"
        logger.debug(f"Making HTTP request: {method} {full_url} (Timeout: {self.timeout}s)")
        try:
            response = self.session.request(
                method,
                full_url,
                headers=self._build_headers(authenticated),
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.error(f"Request timed out after {self.timeout}s: {method} {full_url}")
            raise NetworkError(f"Request timed out after {self.timeout} seconds.") from e
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error: {method} {full_url} - {e}")
            raise NetworkError(f"Unable to connect to the server at {self.base_url}.") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"An unexpected request error occurred: {method} {full_url} - {e}", exc_info=True)
            raise NetworkError(f"Unexpected network error: {e}") from e

        if response.status_code not in (200, 201, 204):
            error = classify_error_response(response.status_code, response.text or "")
            logger.error(f"HTTP error {response.status_code}: {method} {full_url}. {error}")
            raise error

        if response.status_code == 204 or not response.text:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"Failed to decode JSON response from {method} {full_url} "
                         f"(Status: {response.status_code}). Response text: {response.text[:200]}...")
            raise ApiError("Invalid JSON response from server despite success status.", response.status_code) from e
        if not isinstance(data, dict):
            raise ApiError("Unexpected response format from server.", response.status_code)
        logger.debug(f"Request successful ({response.status_code}): {method} {full_url}")
        return data

    def login_with_magic_link(self, token: str) -> Dict[str, Any]:
        """
        Exchanges a one-time registration token for a bearer credential.

        :param token: Magic-link token from the web app
        :type token: str
        :return: Response holding ``accessToken``
        :rtype: Dict[str, Any]
        :raises ApiError: If the exchange fails
        """
        logger.info("Exchanging registration token...")
        return self._make_request('POST', f"/auth/magic-link/{quote(token, safe='')}", authenticated=False)

    def get_me(self) -> Dict[str, Any]:
        return self._make_request('GET', "/users/me")

    def register(self, identifiers: 'DeviceIdentifiers') -> Dict[str, Any]:
        """
        Registers this device.

        :param identifiers: Device identity tuple
        :type identifiers: DeviceIdentifiers
        :return: Response, possibly holding ``lastCheckedAt``
        :rtype: Dict[str, Any]
        """
        logger.info("Registering device...")
        return self._make_request('POST', "/agentv2/register", payload=identifiers.to_payload())

    def sync(self, snapshot: 'TelemetrySnapshot') -> Dict[str, Any]:
        """
        Uploads one telemetry snapshot.

        :param snapshot: Collected snapshot
        :type snapshot: TelemetrySnapshot
        :return: Sync response; ``data.lastcheckedAt`` holds the server's timestamp
        :rtype: Dict[str, Any]
        """
        payload = snapshot.to_payload()
        logger.info(f"Uploading snapshot ({len(payload['rawQueryResults'])} facts)...")
        return self._make_request('POST', "/agentv2/sync", payload=payload)

    def get_init_data(self) -> Dict[str, Any]:
        return self._make_request('GET', "/agentv2/init")
