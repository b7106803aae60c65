"""
Configuration Manager module for the Compliance Agent.
"""
import copy
import json
import os
from typing import Any, Optional, Dict, Mapping

from ..core.errors import ConfigurationError
from ..utils import get_logger, save_json, load_json
from ..version import __version__

logger = get_logger(__name__)

ENV_PREFIX = "COMPLIANCE_AGENT_"
ENV_NESTING_SEPARATOR = "__"
DEFAULT_BASE_DIR = os.path.join("~", ".compliance-agent")
CONFIG_FILENAME = "config.json"

REGIONS = ("NA", "EU", "APAC")
TARGET_ENVS = ("LOCAL", "DEV", "QA", "PROD")

DEFAULT_CONFIG: Dict[str, Any] = {
    "agent": {
        "version": __version__,
    },
    "api": {
        "region": "NA",
        "target_env": "PROD",
    },
    "sync": {
        "interval_hours": 2,
        "min_hours_since_last_sync": 24,
        "min_minutes_between_syncs": 15,
    },
    "daemon": {
        "initial_delay_sec": 10,
    },
    "osquery": {
        "path": "",
        "probe_timeout_sec": 120,
    },
    "http_client": {
        "request_timeout_sec": 300,
    },
    "logging": {
        "console_level": "INFO",
        "file_level": "DEBUG",
        "file": "",
    },
    "storage": {
        "base_dir": DEFAULT_BASE_DIR,
    },
}

# Keys that must hold positive integers; throttles may be zero
_POSITIVE_INT_KEYS = ("sync.interval_hours", "osquery.probe_timeout_sec", "http_client.request_timeout_sec")
_NON_NEGATIVE_INT_KEYS = ("sync.min_hours_since_last_sync", "sync.min_minutes_between_syncs",
                          "daemon.initial_delay_sec")


def parse_region(value: Any) -> str:
    """
    Normalize and validate a region name.

    :param value: Region such as ``na`` or ``EU``
    :type value: Any
    :return: Upper-cased region
    :rtype: str
    :raises ConfigurationError: If the region is not one of NA, EU, APAC
    """
    region = str(value or "").strip().upper()
    if region not in REGIONS:
        raise ConfigurationError(f"Invalid region '{value}'. Must be one of: {', '.join(REGIONS)}")
    return region


def parse_target_env(value: Any) -> str:
    """
    Normalize and validate a target environment name.

    :param value: Environment such as ``prod``
    :type value: Any
    :return: Upper-cased environment
    :rtype: str
    :raises ConfigurationError: If the environment is not one of LOCAL, DEV, QA, PROD
    """
    target_env = str(value or "").strip().upper()
    if target_env not in TARGET_ENVS:
        raise ConfigurationError(f"Invalid target environment '{value}'. Must be one of: {', '.join(TARGET_ENVS)}")
    return target_env


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)
    return base


def _set_path(data: Dict[str, Any], key_path: str, value: Any):
    keys = key_path.split('.')
    node = data
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def _decode_env_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class ConfigManager:
    """
    Loads and manages agent configuration.

    Values are layered: built-in defaults, then the optional JSON config file,
    then ``COMPLIANCE_AGENT_*`` environment variables, then explicit overrides.
    Nested keys are addressed with dots (``sync.interval_hours``); in the
    environment the nesting separator is a double underscore
    (``COMPLIANCE_AGENT_SYNC__INTERVAL_HOURS``).
    """

    def __init__(self,
                 config_path: Optional[str] = None,
                 overrides: Optional[Dict[str, Any]] = None,
                 environ: Optional[Mapping[str, str]] = None):
        """
        Initializes the ConfigManager and validates the merged configuration.

        :param config_path: Path to the JSON config file. Defaults to ``config.json`` under the base directory
        :type config_path: Optional[str]
        :param overrides: Dot-path keys applied last, e.g. ``{"api.region": "EU"}``
        :type overrides: Optional[Dict[str, Any]]
        :param environ: Environment mapping. Defaults to ``os.environ``
        :type environ: Optional[Mapping[str, str]]
        :raises ConfigurationError: If the file is invalid JSON or a value fails validation
        """
        self._environ = os.environ if environ is None else environ
        self._config_data: Dict[str, Any] = copy.deepcopy(DEFAULT_CONFIG)
        self._file_data: Dict[str, Any] = {}

        env_layer = self._read_environment()
        base_dir = env_layer.get("storage", {}).get("base_dir") or DEFAULT_BASE_DIR
        if overrides and overrides.get("storage.base_dir"):
            base_dir = overrides["storage.base_dir"]
        self._config_path = os.path.expanduser(config_path or os.path.join(base_dir, CONFIG_FILENAME))

        self._load_config()
        _deep_merge(self._config_data, self._file_data)
        _deep_merge(self._config_data, env_layer)
        for key_path, value in (overrides or {}).items():
            _set_path(self._config_data, key_path, value)

        self._validate_config()
        logger.debug(f"Configuration loaded. File: {self._config_path} (exists: {os.path.exists(self._config_path)})")

    def _load_config(self):
        """
        Loads the configuration file if present.

        :raises ConfigurationError: If the file cannot be parsed or is not a JSON object
        """
        if not os.path.exists(self._config_path):
            logger.debug(f"No configuration file at {self._config_path}. Using defaults.")
            return

        try:
            data = load_json(self._config_path, strict=True)
        except (ValueError, OSError) as e:
            logger.critical(f"Error loading config file {self._config_path}: {e}")
            raise ConfigurationError(f"Could not read configuration file: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError("Configuration file content is not a valid JSON object.")
        self._file_data = data

    def _read_environment(self) -> Dict[str, Any]:
        layer: Dict[str, Any] = {}
        for name, raw in self._environ.items():
            if not name.startswith(ENV_PREFIX):
                continue
            key_path = name[len(ENV_PREFIX):].lower().replace(ENV_NESTING_SEPARATOR, '.')
            if not key_path:
                continue
            _set_path(layer, key_path, _decode_env_value(raw))
            logger.debug(f"Configuration override from environment: {name}")
        return layer

    def _validate_config(self):
        """
        Validates and normalizes the merged configuration.

        :raises ConfigurationError: If a value is invalid
        """
        _set_path(self._config_data, "api.region", parse_region(self.get("api.region")))
        _set_path(self._config_data, "api.target_env", parse_target_env(self.get("api.target_env")))

        for key_path in _POSITIVE_INT_KEYS + _NON_NEGATIVE_INT_KEYS:
            value = self.get(key_path)
            if isinstance(value, bool) or not isinstance(value, int):
                msg = f"Invalid '{key_path}' configuration: Must be an integer, got {value!r}."
                logger.critical(msg)
                raise ConfigurationError(msg)
            if key_path in _POSITIVE_INT_KEYS and value <= 0:
                msg = f"Invalid '{key_path}' configuration: Must be a positive integer."
                logger.critical(msg)
                raise ConfigurationError(msg)
            if value < 0:
                msg = f"Invalid '{key_path}' configuration: Must not be negative."
                logger.critical(msg)
                raise ConfigurationError(msg)

        osquery_path = self.get("osquery.path")
        if osquery_path is not None and not isinstance(osquery_path, str):
            raise ConfigurationError("Invalid 'osquery.path' configuration: Must be a string.")

        logger.debug("Configuration validation passed.")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Retrieves a configuration value using a dot-separated key path.

        :param key_path: The dot-separated path to the configuration key
        :type key_path: str
        :param default: The default value to return if the key is not found
        :type default: Any
        :return: The configuration value or the default value
        :rtype: Any
        """
        value: Any = self._config_data
        for key in key_path.split('.'):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value: Any):
        """
        Sets a value in the file layer and in the merged configuration.
        Call :meth:`save` to persist it.

        :param key_path: The dot-separated path to the configuration key
        :type key_path: str
        :param value: New value
        :type value: Any
        :raises ConfigurationError: If the new value fails validation
        """
        previous = copy.deepcopy(self._config_data)
        _set_path(self._config_data, key_path, value)
        try:
            self._validate_config()
        except ConfigurationError:
            self._config_data = previous
            raise
        _set_path(self._file_data, key_path, self.get(key_path))

    def save(self) -> bool:
        """
        Writes the file layer back to the config file.

        :return: True if saved successfully, False otherwise
        :rtype: bool
        """
        os.makedirs(os.path.dirname(self._config_path), mode=0o700, exist_ok=True)
        if save_json(self._file_data, self._config_path, mode=0o600):
            logger.info(f"Configuration saved successfully to: {self._config_path}")
            return True
        logger.error(f"Failed to save configuration to {self._config_path}")
        return False

    @property
    def config_path(self) -> str:
        return self._config_path

    @property
    def base_dir(self) -> str:
        return os.path.expanduser(self.get("storage.base_dir", DEFAULT_BASE_DIR))

    @property
    def state_file_path(self) -> str:
        return os.path.join(self.base_dir, "data", "app-data.json")

    @property
    def log_file_path(self) -> str:
        return os.path.expanduser(self.get("logging.file") or os.path.join(self.base_dir, "logs", "agent.log"))

