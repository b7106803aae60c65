"""
Data models shared by the agent components.
"""
import copy
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from compliance_agent.core.agent_state import SyncState, SyncStatus

# Attribute name -> key in the persisted state document
STATE_DOCUMENT_KEYS: Dict[str, str] = {
    'uuid': 'uuid',
    'app_version': 'appVersion',
    'access_token': 'accessToken',
    'user': 'user',
    'sync_state': 'syncState',
    'last_checked_at': 'lastCheckedAt',
    'last_sync_attempted_at': 'lastSyncAttemptedAt',
    'compliance_data': 'complianceData',
    'win_av_services_match_list': 'winAvServicesMatchList',
    'region': 'region',
}


@dataclass
class UserProfile:
    """
    Subset of the ``/users/me`` response kept in the state document.
    """
    id: Optional[Any] = None
    email: str = ""
    first_name: str = ""
    last_name: str = ""

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> 'UserProfile':
        data = data or {}
        return cls(
            id=data.get('id'),
            email=data.get('email') or "",
            first_name=data.get('firstName') or data.get('first_name') or "",
            last_name=data.get('lastName') or data.get('last_name') or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'email': self.email,
            'firstName': self.first_name,
            'lastName': self.last_name,
        }

    @property
    def display_name(self) -> str:
        name = f"{self.first_name} {self.last_name}".strip()
        return name or self.email


@dataclass
class AgentState:
    """
    In-memory mirror of the persisted state document.

    Every field defaults to its zero value; a cleared store holds exactly
    ``AgentState()``.
    """
    uuid: str = ""
    app_version: str = ""
    access_token: str = ""
    user: Optional[UserProfile] = None
    sync_state: SyncState = SyncState.NEVER
    last_checked_at: str = ""
    last_sync_attempted_at: str = ""
    compliance_data: Optional[Any] = None
    win_av_services_match_list: Optional[List[Any]] = None
    region: str = ""

    @property
    def is_registered(self) -> bool:
        return bool(self.access_token)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'AgentState':
        """
        Build a state from the JSON document. Unknown keys are ignored and
        mistyped values fall back to the field's zero value.

        :param document: Parsed JSON object
        :type document: Dict[str, Any]
        :return: The state
        :rtype: AgentState
        """
        state = cls()
        for attr, key in STATE_DOCUMENT_KEYS.items():
            if key not in document:
                continue
            value = document[key]
            if attr == 'sync_state':
                value = SyncState.from_value(value)
            elif attr == 'user':
                value = UserProfile.from_api(value) if isinstance(value, dict) else None
            elif attr == 'win_av_services_match_list':
                value = value if isinstance(value, list) else None
            elif attr != 'compliance_data':
                value = value if isinstance(value, str) else ""
            setattr(state, attr, value)
        return state

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {}
        for attr, key in STATE_DOCUMENT_KEYS.items():
            value = getattr(self, attr)
            if attr == 'sync_state':
                value = value.value
            elif attr == 'user' and value is not None:
                value = value.to_dict()
            document[key] = value
        return document

    def copy(self) -> 'AgentState':
        return AgentState.from_document(copy.deepcopy(self.to_document()))


@dataclass
class DeviceIdentifiers:
    """
    Minimal identity tuple sent during registration.
    """
    hardware_serial: str = ""
    board_serial: str = ""
    mac: str = ""

    def to_payload(self) -> Dict[str, Any]:
        return {
            'hwSerial': {
                'hardware_serial': self.hardware_serial,
                'board_serial': self.board_serial,
            },
            'macAddress': {
                'mac': self.mac,
            },
        }


# Snapshot attribute -> key inside rawQueryResults
SNAPSHOT_FACT_KEYS: Dict[str, str] = {
    'os_version': 'osVersion',
    'hw_serial': 'hwSerial',
    'hw_model': 'hwModel',
    'board_serial': 'boardSerial',
    'board_model': 'boardModel',
    'computer_name': 'computerName',
    'host_name': 'hostName',
    'local_host_name': 'localHostName',
    'firewall_status': 'firewallStatus',
    'app_list': 'appList',
    'browser_extensions': 'browserExtensions',
    'mac_address': 'macAddress',
    'auto_update_enabled': 'autoUpdateEnabled',
    'auto_update_settings': 'autoUpdateSettings',
    'antivirus_status': 'antivirusStatus',
    'screen_lock_status': 'screenLockStatus',
    'screen_lock_settings': 'screenLockSettings',
    'location_services': 'locationServices',
    'hdd_encryption_status': 'hddEncryptionStatus',
}


@dataclass
class TelemetrySnapshot:
    """
    One point-in-time collection result. Facts whose probe failed stay None
    and are left out of the upload payload.
    """
    agent_version: str
    platform: str
    manual_run: bool = False
    os_version: Optional[Dict[str, Any]] = None
    hw_serial: Optional[Dict[str, Any]] = None
    hw_model: Optional[Dict[str, Any]] = None
    board_serial: Optional[str] = None
    board_model: Optional[str] = None
    computer_name: Optional[str] = None
    host_name: Optional[str] = None
    local_host_name: Optional[str] = None
    firewall_status: Optional[Dict[str, Any]] = None
    app_list: Optional[List[Dict[str, Any]]] = None
    browser_extensions: Optional[List[Dict[str, Any]]] = None
    mac_address: Optional[Dict[str, Any]] = None
    auto_update_enabled: Optional[Any] = None
    auto_update_settings: Optional[Any] = None
    antivirus_status: Optional[Dict[str, Any]] = None
    screen_lock_status: Optional[Any] = None
    screen_lock_settings: Optional[Dict[str, Any]] = None
    location_services: Optional[Any] = None
    hdd_encryption_status: Optional[Any] = None
    extensions: Dict[str, Any] = field(default_factory=dict)

    def facts(self) -> Dict[str, Any]:
        result = {
            wire_key: getattr(self, attr)
            for attr, wire_key in SNAPSHOT_FACT_KEYS.items()
            if getattr(self, attr) is not None
        }
        for key, value in self.extensions.items():
            if value is not None:
                result.setdefault(key, value)
        return result

    def to_payload(self) -> Dict[str, Any]:
        return {
            'drataAgentVersion': self.agent_version,
            'platform': self.platform,
            'manualRun': self.manual_run,
            'rawQueryResults': self.facts(),
        }


@dataclass
class SyncOutcome:
    """
    Result of one sync trigger.
    """
    status: SyncStatus
    message: str = ""
    remaining_wait_minutes: Optional[int] = None
    error: Optional[BaseException] = None
    last_checked_at: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == SyncStatus.SUCCESS

    @property
    def skipped(self) -> bool:
        return self.status.is_skip

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'status': self.status.value, 'message': self.message}
        if self.remaining_wait_minutes is not None:
            result['remainingWaitMinutes'] = self.remaining_wait_minutes
        if self.last_checked_at:
            result['lastCheckedAt'] = self.last_checked_at
        if self.error is not None:
            result['error'] = type(self.error).__name__
        return result


def state_field_names() -> List[str]:
    return [f.name for f in fields(AgentState)]
