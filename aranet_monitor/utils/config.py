"""
Configuration management for the Aranet monitor.
Loads configuration from a .env file and environment variables with validation
and defaults; command-line options override both.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv


MAC_ADDRESS_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")
VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration manager that loads settings from environment variables.
    Provides validation and type conversion for configuration values.
    """

    def __init__(self, env_file: Optional[Union[str, Path]] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in the working directory)
            overrides: Values taking precedence over the environment, keyed like the environment
        """
        self.logger = logging.getLogger(__name__)
        self.overrides: Dict[str, Any] = {
            key: value for key, value in (overrides or {}).items() if value is not None
        }

        if env_file is None:
            env_file = Path.cwd() / ".env"
        self.env_file = Path(env_file)

        if self.env_file.exists():
            load_dotenv(self.env_file)
            self.logger.info(f"Loaded configuration from {self.env_file}")
        else:
            self.logger.debug(f"Environment file {self.env_file} not found, using system environment")

    def _raw(self, key: str) -> Optional[str]:
        if key in self.overrides:
            return str(self.overrides[key])
        value = os.getenv(key)
        if value is not None and value.strip() == "":
            return None
        return value

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        """Get string configuration value."""
        value = self._raw(key)
        if value is None:
            value = default
        if value is None:
            raise ConfigurationError(f"Required configuration key '{key}' not found")
        return value

    def get_optional_str(self, key: str) -> Optional[str]:
        """Get string configuration value, None when unset."""
        return self._raw(key)

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = self._raw(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be an integer, got '{value}'")

    def get_optional_int(self, key: str) -> Optional[int]:
        """Get integer configuration value, None when unset."""
        if self._raw(key) is None:
            return None
        return self.get_int(key)

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Get float configuration value."""
        value = self._raw(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be a float, got '{value}'")

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        """Get boolean configuration value."""
        value = self._raw(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Get path configuration value."""
        value = self._raw(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            value = str(default)

        path = Path(value).expanduser()
        if not path.is_absolute():
            path = Path.cwd() / path

        return path

    # Device Configuration
    @property
    def device_address(self) -> str:
        return self.get_str("ARANET_DEVICE_ADDRESS")

    @property
    def ble_adapter(self) -> str:
        return self.get_str("ARANET_ADAPTER", "hci0")

    @property
    def display_fahrenheit(self) -> bool:
        return self.get_bool("ARANET_DISPLAY_FAHRENHEIT", False)

    @property
    def refresh_interval(self) -> Optional[int]:
        """Seconds between reads; None selects one-shot mode."""
        return self.get_optional_int("ARANET_REFRESH_INTERVAL")

    # Metrics Configuration
    @property
    def metrics_listen_address(self) -> Optional[str]:
        return self.get_optional_str("ARANET_METRICS_LISTEN_ADDRESS")

    @property
    def metrics_honor_display_unit(self) -> bool:
        return self.get_bool("ARANET_METRICS_HONOR_DISPLAY_UNIT", False)

    # BLE Configuration
    @property
    def ble_scan_timeout(self) -> float:
        return self.get_float("BLE_SCAN_TIMEOUT", 10.0)

    @property
    def ble_connect_timeout(self) -> float:
        return self.get_float("BLE_CONNECT_TIMEOUT", 20.0)

    @property
    def ble_pair_timeout(self) -> float:
        return self.get_float("BLE_PAIR_TIMEOUT", 60.0)

    @property
    def ble_read_timeout(self) -> float:
        return self.get_float("BLE_READ_TIMEOUT", 10.0)

    @property
    def ble_pairing_enabled(self) -> bool:
        return self.get_bool("BLE_PAIRING_ENABLED", True)

    @property
    def ble_pairing_pin(self) -> Optional[str]:
        return self.get_optional_str("BLE_PAIRING_PIN")

    @property
    def pinentry_program(self) -> str:
        return self.get_str("PINENTRY_PROGRAM", "pinentry")

    # Retry Configuration
    @property
    def retry_backoff_base(self) -> float:
        return self.get_float("RETRY_BACKOFF_BASE", 2.0)

    @property
    def retry_backoff_max(self) -> float:
        return self.get_float("RETRY_BACKOFF_MAX", 300.0)

    @property
    def retry_persistent_error_limit(self) -> int:
        return self.get_int("RETRY_PERSISTENT_ERROR_LIMIT", 5)

    @property
    def shutdown_poll_interval(self) -> float:
        return self.get_float("SHUTDOWN_POLL_INTERVAL", 0.5)

    # Logging Configuration
    @property
    def log_level(self) -> str:
        return self.get_str("LOG_LEVEL", "INFO").upper()

    @property
    def log_dir(self) -> Path:
        return self.get_path("LOG_DIR", "./logs")

    @property
    def log_max_file_size(self) -> int:
        return self.get_int("LOG_MAX_FILE_SIZE", 10 * 1024 * 1024)  # 10MB

    @property
    def log_backup_count(self) -> int:
        return self.get_int("LOG_BACKUP_COUNT", 5)

    @property
    def log_enable_console(self) -> bool:
        return self.get_bool("LOG_ENABLE_CONSOLE", True)

    @property
    def log_enable_file(self) -> bool:
        return self.get_bool("LOG_ENABLE_FILE", True)

    @property
    def log_enable_syslog(self) -> bool:
        return self.get_bool("LOG_ENABLE_SYSLOG", False)

    # Performance Monitoring
    @property
    def performance_log_interval(self) -> int:
        return self.get_int("PERFORMANCE_LOG_INTERVAL", 300)

    @property
    def continuous_mode(self) -> bool:
        return self.refresh_interval is not None

    def validate_configuration(self) -> bool:
        """
        Validate all configuration values.

        Returns:
            bool: True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        # Imported here to keep utils free of package-level imports at load time
        from ..metrics.exporter import parse_listen_address

        errors = []

        # Validate device configuration
        try:
            if not MAC_ADDRESS_PATTERN.match(self.device_address):
                errors.append(f"ARANET_DEVICE_ADDRESS must look like AA:BB:CC:DD:EE:FF, got '{self.device_address}'")
            if not self.ble_adapter:
                errors.append("ARANET_ADAPTER cannot be empty")
            interval = self.refresh_interval
            if interval is not None and interval <= 0:
                errors.append("ARANET_REFRESH_INTERVAL must be positive")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate metrics configuration
        try:
            if self.metrics_listen_address:
                try:
                    parse_listen_address(self.metrics_listen_address)
                except ValueError as e:
                    errors.append(f"ARANET_METRICS_LISTEN_ADDRESS is invalid: {e}")
            self.metrics_honor_display_unit
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate BLE configuration
        try:
            if self.ble_scan_timeout <= 0:
                errors.append("BLE_SCAN_TIMEOUT must be positive")
            if self.ble_connect_timeout <= 0:
                errors.append("BLE_CONNECT_TIMEOUT must be positive")
            if self.ble_pair_timeout <= 0:
                errors.append("BLE_PAIR_TIMEOUT must be positive")
            if self.ble_read_timeout <= 0:
                errors.append("BLE_READ_TIMEOUT must be positive")
            pin = self.ble_pairing_pin
            if pin is not None and not pin.strip().isdigit():
                errors.append("BLE_PAIRING_PIN must contain digits only")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate retry configuration
        try:
            if self.retry_backoff_base <= 0:
                errors.append("RETRY_BACKOFF_BASE must be positive")
            if self.retry_backoff_max < self.retry_backoff_base:
                errors.append("RETRY_BACKOFF_MAX cannot be smaller than RETRY_BACKOFF_BASE")
            if self.retry_persistent_error_limit < 1:
                errors.append("RETRY_PERSISTENT_ERROR_LIMIT must be at least 1")
            if self.shutdown_poll_interval <= 0:
                errors.append("SHUTDOWN_POLL_INTERVAL must be positive")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate log level
        try:
            if self.log_level not in VALID_LOG_LEVELS:
                errors.append(f"LOG_LEVEL must be one of {VALID_LOG_LEVELS}")
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> dict:
        """Get configuration summary for logging/debugging."""
        return {
            'device': {
                'address': self.device_address,
                'adapter': self.ble_adapter,
                'refresh_interval': self.refresh_interval,
                'display_fahrenheit': self.display_fahrenheit,
            },
            'metrics': {
                'listen_address': self.metrics_listen_address,
                'honor_display_unit': self.metrics_honor_display_unit,
            },
            'ble': {
                'scan_timeout': self.ble_scan_timeout,
                'connect_timeout': self.ble_connect_timeout,
                'pair_timeout': self.ble_pair_timeout,
                'read_timeout': self.ble_read_timeout,
                'pairing_enabled': self.ble_pairing_enabled,
                'pin_configured': self.ble_pairing_pin is not None,
                'pinentry_program': self.pinentry_program,
            },
            'retry': {
                'backoff_base': self.retry_backoff_base,
                'backoff_max': self.retry_backoff_max,
                'persistent_error_limit': self.retry_persistent_error_limit,
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
                'enable_file': self.log_enable_file,
                'enable_syslog': self.log_enable_syslog,
            },
        }
