"""
Utility functions for the Compliance Agent.
"""
from compliance_agent.utils.logger import get_logger, setup_logger, get_file_logging_status
from compliance_agent.utils.utils import (
    save_json,
    load_json,
    utc_now,
    format_timestamp,
    parse_timestamp,
    format_duration
)

__all__ = [
    'get_logger',
    'setup_logger',
    'get_file_logging_status',
    'save_json',
    'load_json',
    'utc_now',
    'format_timestamp',
    'parse_timestamp',
    'format_duration'
]
