"""
Logging setup for the Compliance Agent.

All package modules log through children of the ``compliance_agent`` logger.
The console handler writes to stderr so that command output on stdout stays
machine readable. The optional rotating log file is created owner-only, and
every record passes through :class:`CredentialFilter` before it is emitted.
"""
import os
import re
import sys
import logging
import logging.handlers
import tempfile
from typing import Optional, Dict, Any

ROOT_LOGGER_NAME = 'compliance_agent'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_MODE = 0o600
REDACTED = '***'

_CREDENTIAL_PATTERNS = (
    re.compile(r'(Bearer\s+)[^\s\'",}]+', re.IGNORECASE),
    re.compile(r'((?:access_?token|accessToken|token)["\']?\s*[:=]\s*["\']?)[^\s\'",}&]+', re.IGNORECASE),
)

_file_handler: Optional[logging.handlers.RotatingFileHandler] = None


class CredentialFilter(logging.Filter):
    """Masks bearer tokens and token fields in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def redact(text: str) -> str:
    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(lambda m: m.group(1) + REDACTED, text)
    return text


def _parse_level(level_name: str, default_level: int) -> int:
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        return level
    sys.stderr.write(f"Invalid log level '{level_name}', using {logging.getLevelName(default_level)}.\n")
    return default_level


def _prepare_log_directory(directory: str) -> Optional[str]:
    """
    Make sure ``directory`` exists and is writable.

    :return: None when usable, otherwise the reason it is not
    :rtype: Optional[str]
    """
    try:
        os.makedirs(directory, mode=0o700, exist_ok=True)
    except OSError as e:
        return f"cannot create {directory}: {e}"
    if not os.access(directory, os.W_OK):
        return f"{directory} is not writable"
    return None


def _open_log_file(log_file_path: str, max_bytes: int, backup_count: int,
                   logger: logging.Logger) -> Optional[logging.handlers.RotatingFileHandler]:
    problem = _prepare_log_directory(os.path.dirname(log_file_path) or os.getcwd())
    if problem:
        fallback = os.path.join(tempfile.gettempdir(), 'compliance-agent', 'logs',
                                os.path.basename(log_file_path))
        logger.warning(f"Log directory unusable ({problem}). Logging to {fallback} instead.")
        problem = _prepare_log_directory(os.path.dirname(fallback))
        if problem:
            logger.error(f"Fallback log directory unusable ({problem}). File logging disabled.")
            return None
        log_file_path = fallback

    try:
        handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
        )
        os.chmod(log_file_path, LOG_FILE_MODE)
    except OSError as e:
        logger.error(f"Failed to open log file {log_file_path}: {e}. Logging to console only.")
        return None
    return handler


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    console_level_name: str = 'INFO',
    file_level_name: str = 'DEBUG',
    log_file_path: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    force: bool = False
) -> logging.Logger:
    """
    Configure the package logger.

    Calling it again without ``force`` keeps the existing handlers.

    :param name: Logger name, normally the package root
    :type name: str
    :param console_level_name: Level for stderr output
    :type console_level_name: str
    :param file_level_name: Level for the log file
    :type file_level_name: str
    :param log_file_path: Log file, or None for console only
    :type log_file_path: Optional[str]
    :param max_bytes: Rotation size of the log file
    :type max_bytes: int
    :param backup_count: Rotated files to keep
    :type backup_count: int
    :param force: Replace handlers installed by an earlier call
    :type force: bool
    :return: The configured logger
    :rtype: logging.Logger
    """
    global _file_handler

    logger = logging.getLogger(name)
    if logger.handlers and not force:
        return logger

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    if name == ROOT_LOGGER_NAME:
        _file_handler = None

    console_level = _parse_level(console_level_name, logging.INFO)
    file_level = _parse_level(file_level_name, logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT)
    credential_filter = CredentialFilter()

    logger.propagate = False
    logger.setLevel(console_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(credential_filter)
    logger.addHandler(console_handler)

    if log_file_path:
        file_handler = _open_log_file(log_file_path, max_bytes, backup_count, logger)
        if file_handler:
            file_handler.setLevel(file_level)
            file_handler.setFormatter(formatter)
            file_handler.addFilter(credential_filter)
            logger.addHandler(file_handler)
            logger.setLevel(min(console_level, file_level))
            if name == ROOT_LOGGER_NAME:
                _file_handler = file_handler
            logger.debug(f"File logging enabled: {file_handler.baseFilename}")

    return logger


def get_file_logging_status() -> Dict[str, Any]:
    """Describe the package log file for the debug report."""
    if _file_handler is None:
        return {"file_logging_enabled": False, "log_file": None}
    path = _file_handler.baseFilename
    exists = os.path.exists(path)
    return {
        "file_logging_enabled": True,
        "log_file": path,
        "level": logging.getLevelName(_file_handler.level),
        "size_bytes": os.path.getsize(path) if exists else 0,
    }


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a logger for ``name``.

    Package module loggers propagate to the package logger, which gets
    console-only defaults until :func:`setup_logger` is called.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        setup_logger(ROOT_LOGGER_NAME)
    return logging.getLogger(name)
