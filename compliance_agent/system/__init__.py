"""
System utilities for the Compliance Agent.
"""
from compliance_agent.system.directory_utils import (
    setup_directory_structure,
    determine_storage_path
)
from compliance_agent.system.lock_manager import LockManager
from compliance_agent.system.session_user import (
    SessionUser,
    resolve_session_user,
    is_valid_username,
    is_privileged
)

__all__ = [
    'setup_directory_structure',
    'determine_storage_path',

    'LockManager',

    'SessionUser',
    'resolve_session_user',
    'is_valid_username',
    'is_privileged'
]
