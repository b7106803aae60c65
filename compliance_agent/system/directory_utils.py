"""
Utilities for determining and creating the Agent's directory structure.
All agent data lives under one per-user base directory restricted to the owner.
"""
import os
from typing import List

from compliance_agent.utils import get_logger

logger = get_logger(__name__)

DEFAULT_BASE_DIR = os.path.expanduser(os.path.join("~", ".compliance-agent"))
AGENT_SUBDIRS: List[str] = ["data", "logs"]
PRIVATE_DIR_MODE = 0o700


def determine_storage_path(base_dir: str = DEFAULT_BASE_DIR) -> str:
    """
    Resolves and creates the base storage directory with owner-only permissions.

    :param base_dir: Base directory, ``~`` is expanded
    :type base_dir: str
    :return: Absolute path of the base directory
    :rtype: str
    :raises OSError: If the directory cannot be created
    """
    base_path = os.path.abspath(os.path.expanduser(base_dir))
    try:
        os.makedirs(base_path, mode=PRIVATE_DIR_MODE, exist_ok=True)
        if os.name != 'nt':
            os.chmod(base_path, PRIVATE_DIR_MODE)
    except OSError as e:
        logger.error(f"Error creating or accessing storage path {base_path}: {e}")
        raise
    return base_path


def setup_directory_structure(base_dir: str = DEFAULT_BASE_DIR) -> str:
    """
    Sets up the directory structure for the agent, creating necessary subdirectories.

    :param base_dir: Base directory, ``~`` is expanded
    :type base_dir: str
    :return: Base storage path that was set up
    :rtype: str
    """
    storage_path = determine_storage_path(base_dir)

    for subdir in AGENT_SUBDIRS:
        subdir_path = os.path.join(storage_path, subdir)
        try:
            os.makedirs(subdir_path, mode=PRIVATE_DIR_MODE, exist_ok=True)
            logger.debug(f"Created/verified directory: {subdir_path}")
        except OSError as e:
            logger.error(f"Failed to create directory {subdir_path}: {e}")

    return storage_path
