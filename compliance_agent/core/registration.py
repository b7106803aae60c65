"""
Registration handshake: token exchange, profile fetch and device registration.
"""
from typing import TYPE_CHECKING

from compliance_agent.config.config_manager import parse_region
from compliance_agent.core.errors import AlreadyRegisteredError, ApiError, NotRegisteredError
from compliance_agent.core.models import UserProfile
from compliance_agent.core.sync_orchestrator import extract_last_checked_at
from compliance_agent.utils import get_logger

if TYPE_CHECKING:
    from compliance_agent.communication import HttpClient
    from compliance_agent.config import StateManager
    from compliance_agent.monitoring import PlatformAdapter

logger = get_logger(__name__)


class RegistrationHandshake:
    """
    Binds this device to a user account.

    If the device registration call fails after the token exchange, the
    credential and profile are kept; ``register(..., resume=True)`` re-runs
    only the device registration steps.
    """

    def __init__(self,
                 state_manager: 'StateManager',
                 http_client: 'HttpClient',
                 adapter: 'PlatformAdapter',
                 agent_version: str):
        self.state_manager = state_manager
        self.http_client = http_client
        self.adapter = adapter
        self.agent_version = agent_version

    def register(self, token: str, region: str, resume: bool = False) -> UserProfile:
        """
        Runs the handshake.

        :param token: One-time registration token. Ignored when resuming
        :type token: str
        :param region: Account region (NA, EU, APAC). Ignored when resuming
        :type region: str
        :param resume: Finish an earlier handshake that failed at device registration
        :type resume: bool
        :return: The registered user's profile
        :rtype: UserProfile
        :raises AlreadyRegisteredError: If registered and not resuming
        :raises NotRegisteredError: If resuming without a stored credential
        :raises ConfigurationError: If the region is invalid
        :raises ApiError: If an API call fails
        """
        if resume:
            if not self.state_manager.is_registered:
                raise NotRegisteredError("Nothing to resume: the agent has no stored credential.")
            logger.info("Resuming registration with the stored credential.")
        else:
            if self.state_manager.is_registered:
                raise AlreadyRegisteredError("Agent is already registered. Unregister first.")
            self._authenticate(token, region)

        self._register_device()
        self.state_manager.set_app_version(self.agent_version)

        user = self.state_manager.user or UserProfile()
        logger.info(f"Registration complete for {user.display_name or 'unknown user'}.")
        return user

    def _authenticate(self, token: str, region: str):
        if not token or not token.strip():
            raise ValueError("Registration token must not be empty.")

        self.state_manager.set_region(parse_region(region))
        self.state_manager.ensure_uuid()

        response = self.http_client.login_with_magic_link(token.strip())
        access_token = response.get('accessToken')
        if not isinstance(access_token, str) or not access_token:
            raise ApiError("Token exchange response did not include an access token.")
        self.state_manager.set_access_token(access_token)
        logger.info("Registration token accepted.")

        try:
            profile = UserProfile.from_api(self.http_client.get_me())
            self.state_manager.set_user(profile)
        except Exception:
            logger.error("Could not load the user profile. Removing the stored credential.")
            self.state_manager.update(access_token="", user=None)
            raise

    def _register_device(self):
        identifiers = self.adapter.device_identifiers()
        logger.debug(f"Device identifiers: serial={identifiers.hardware_serial or '-'}, mac={identifiers.mac or '-'}")
        response = self.http_client.register(identifiers)
        last_checked_at = extract_last_checked_at(response)
        if last_checked_at:
            self.state_manager.set_last_checked_at(last_checked_at)
