"""
Configuration management modules for the Compliance Agent.
"""
from .config_manager import ConfigManager, parse_region, parse_target_env
from .state_manager import StateManager

__all__ = [
    'ConfigManager',
    'StateManager',
    'parse_region',
    'parse_target_env'
]
