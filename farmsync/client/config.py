"""
Configuration Management for FarmSync Client.

This module handles client configuration: the server endpoint, retry policy,
queue persistence, storage thresholds and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from farmsync.shared.exceptions import ConfigurationError, ErrorCode
from farmsync.shared.logging_config import LogFormat, LogLevel, setup_logging
from .retry_policy import RetryPolicy
from .storage_monitor import StorageThresholds

logger = logging.getLogger(__name__)


DEFAULTS: Dict[str, Dict[str, Any]] = {
    'server': {
        'url': 'http://localhost:8080',
        'timeout': 30.0
    },
    'retry': {
        'max_retries': 3,
        'base_delay_ms': 1000,
        'max_delay_ms': 30000
    },
    'queue': {
        'persistence_file': '~/.farmsync/mutation-queue.json',
        'offline_first': True
    },
    'storage': {
        'warning_percent': 70,
        'critical_percent': 85,
        'blocked_percent': 95
    },
    'temp_ids': {
        'max_age_days': 7,
        'persistence_file': None
    },
    'logging': {
        'level': 'INFO',
        'format': 'standard',
        'file': None,
        'audit_file': None
    }
}

ENV_MAPPINGS = {
    'FARMSYNC_SERVER_URL': ('server', 'url'),
    'FARMSYNC_SERVER_TIMEOUT': ('server', 'timeout'),
    'FARMSYNC_MAX_RETRIES': ('retry', 'max_retries'),
    'FARMSYNC_BASE_DELAY_MS': ('retry', 'base_delay_ms'),
    'FARMSYNC_MAX_DELAY_MS': ('retry', 'max_delay_ms'),
    'FARMSYNC_QUEUE_FILE': ('queue', 'persistence_file'),
    'FARMSYNC_OFFLINE_FIRST': ('queue', 'offline_first'),
    'FARMSYNC_STORAGE_WARNING': ('storage', 'warning_percent'),
    'FARMSYNC_STORAGE_CRITICAL': ('storage', 'critical_percent'),
    'FARMSYNC_STORAGE_BLOCKED': ('storage', 'blocked_percent'),
    'FARMSYNC_TEMP_ID_MAX_AGE_DAYS': ('temp_ids', 'max_age_days'),
    'FARMSYNC_LOG_LEVEL': ('logging', 'level'),
    'FARMSYNC_LOG_FORMAT': ('logging', 'format'),
    'FARMSYNC_LOG_FILE': ('logging', 'file'),
}


def _coerce(value: str) -> Any:
    """Interpret a string from the environment or an INI file."""
    if value.lower() in ('true', 'false'):
        return value.lower() == 'true'
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return value


class SyncClientConfiguration:
    """
    Configuration manager for the FarmSync client.

    Supports configuration from:
    1. Programmatic overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        self._config_file = config_file or str(Path.home() / '.farmsync' / 'client.conf')
        self._environ = environ if environ is not None else os.environ
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = self._config_data.setdefault(section_name, {})
            for key, value in config[section_name].items():
                section_data[key] = _coerce(value)

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in ENV_MAPPINGS.items():
            value = self._environ.get(env_var)
            if value is not None:
                self._config_data.setdefault(section, {})[key] = _coerce(value)

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        for section, section_defaults in DEFAULTS.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                section_data.setdefault(key, default_value)

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def save_configuration(self) -> None:
        """Save file-backed configuration (overrides excluded)."""
        config = ConfigParser()
        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        config_path = Path(self._config_file)
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._config_file, 'w') as f:
            config.write(f)

        logger.info(f"Configuration saved to: {self._config_file}")

    def get_config_file_path(self) -> str:
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def _number(self, key: str, kind=float, minimum: Optional[float] = None) -> Any:
        value = self.get_config(key)
        try:
            if isinstance(value, bool):
                raise ValueError("boolean is not a number")
            number = kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Configuration value {key}={value!r} is not a valid {kind.__name__}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key,
                cause=e
            )
        if minimum is not None and number < minimum:
            raise ConfigurationError(
                f"Configuration value {key}={number} must be at least {minimum}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key=key
            )
        return number

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        return str(self.get_config('server.url')).rstrip('/')

    def get_server_timeout(self) -> float:
        return self._number('server.timeout', float, minimum=0.0)

    def get_retry_policy(self) -> RetryPolicy:
        """Retry policy built from the ``retry`` section."""
        try:
            return RetryPolicy(
                max_retries=self._number('retry.max_retries', int),
                base_delay_ms=self._number('retry.base_delay_ms', int),
                max_delay_ms=self._number('retry.max_delay_ms', int)
            )
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid retry configuration: {e}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='retry',
                cause=e
            )

    def get_storage_thresholds(self) -> StorageThresholds:
        try:
            return StorageThresholds(
                warning=self._number('storage.warning_percent'),
                critical=self._number('storage.critical_percent'),
                blocked=self._number('storage.blocked_percent')
            )
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid storage thresholds: {e}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='storage',
                cause=e
            )

    def get_queue_file(self) -> Path:
        return Path(str(self.get_config('queue.persistence_file'))).expanduser()

    def is_offline_first(self) -> bool:
        return bool(self.get_config('queue.offline_first', True))

    def get_temp_id_max_age(self) -> timedelta:
        return timedelta(days=self._number('temp_ids.max_age_days', float, minimum=0.0))

    def get_temp_id_file(self) -> Optional[Path]:
        value = self.get_config('temp_ids.persistence_file')
        return Path(str(value)).expanduser() if value else None

    def get_log_level(self) -> LogLevel:
        value = str(self.get_config('logging.level', 'INFO')).upper()
        try:
            return LogLevel(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown log level: {value}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='logging.level',
                cause=e
            )

    def get_log_format(self) -> LogFormat:
        value = str(self.get_config('logging.format', 'standard')).lower()
        try:
            return LogFormat(value)
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown log format: {value}",
                error_code=ErrorCode.CONFIG_INVALID_VALUE,
                config_key='logging.format',
                cause=e
            )

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def configure_logging(self, enable_console: bool = True) -> Dict[str, logging.Logger]:
        """Install logging handlers according to the ``logging`` section."""
        return setup_logging(
            log_level=self.get_log_level(),
            log_format=self.get_log_format(),
            log_file=self.get_log_file(),
            enable_console=enable_console,
            audit_file=self.get_config('logging.audit_file')
        )
