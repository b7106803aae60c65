"""
Utility functions for the Compliance Agent.
"""
import datetime
import json
import os
import tempfile
from typing import Any, Optional

from compliance_agent.utils.logger import get_logger

logger = get_logger(__name__)


def save_json(data: Any, file_path: str, mode: Optional[int] = None) -> bool:
    """
    Save data to a JSON file atomically.

    The data is written to a temporary file in the same directory, flushed to
    disk and then moved over the target path.

    :param data: Data to save
    :type data: Any
    :param file_path: Path to save the JSON file
    :type file_path: str
    :param mode: Permission bits applied to the file before it is moved into place
    :type mode: Optional[int]
    :return: True if save succeeded, False otherwise
    :rtype: bool
    """
    if not file_path:
        logger.error("Cannot save JSON: File path is empty")
        return False

    directory = os.path.dirname(os.path.abspath(file_path))
    temp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=4)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, file_path)
        temp_path = None
        logger.debug(f"Successfully saved JSON data to: {file_path}")
        return True
    except (IOError, OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write file {file_path}: {e}")
        return False
    finally:
        if temp_path and os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.warning(f"Failed to remove temporary file {temp_path}: {e}")


def load_json(file_path: str, strict: bool = False) -> Any:
    """
    Load data from a JSON file.

    :param file_path: Path to the JSON file
    :type file_path: str
    :param strict: Raise on unreadable or malformed content instead of returning an empty dict
    :type strict: bool
    :return: Loaded data, or an empty dict when the file is missing
    :rtype: Any
    :raises ValueError: In strict mode, if the file is not valid JSON
    :raises OSError: In strict mode, if the file cannot be read
    """
    if not file_path or not os.path.exists(file_path):
        logger.debug(f"JSON file does not exist: {file_path}")
        return {}

    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        logger.debug(f"Successfully loaded JSON data from: {file_path}")
        return data
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse JSON from {file_path}: {e}")
        if strict:
            raise ValueError(f"Invalid JSON in {file_path}: {e}") from e
        return {}
    except (IOError, OSError) as e:
        logger.error(f"Failed to read file {file_path}: {e}")
        if strict:
            raise
        return {}


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def format_timestamp(value: datetime.datetime) -> str:
    """
    Format a datetime as an RFC 3339 UTC string with second precision.

    :param value: The datetime to format; naive values are taken as UTC
    :type value: datetime.datetime
    :return: String such as ``2024-05-01T10:00:00Z``
    :rtype: str
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    """
    Parse an ISO-8601 / RFC 3339 timestamp into an aware datetime.

    :param value: Timestamp string, e.g. ``2024-05-01T10:00:00Z`` or ``2024-05-01T10:00:00.123+00:00``
    :type value: Optional[str]
    :return: Aware datetime in UTC, or None if the value is empty or unparsable
    :rtype: Optional[datetime.datetime]
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.datetime.fromisoformat(text)
    except ValueError:
        logger.debug(f"Unparsable timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


def format_duration(delta: datetime.timedelta) -> str:
    """
    Render a duration the way status output shows it, e.g. ``2h 5m ago``.

    :param delta: Elapsed time
    :type delta: datetime.timedelta
    :return: Short human readable duration
    :rtype: str
    """
    total_minutes = int(delta.total_seconds() // 60)
    if total_minutes < 1:
        return "just now"
    if total_minutes < 60:
        return f"{total_minutes}m ago"
    hours, minutes = divmod(total_minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m ago"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h ago"
