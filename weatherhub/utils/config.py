"""
Configuration management for the weather station hub.
Loads configuration from environment variables with validation and defaults.
"""

import os
import sys
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse
from dotenv import load_dotenv
import logging


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration manager that loads settings from environment variables.
    Provides validation and type conversion for configuration values.
    """

    def __init__(self, env_file: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in the working directory)
        """
        self.logger = logging.getLogger(__name__)

        if env_file is None:
            env_file = Path.cwd() / ".env"

        if Path(env_file).exists():
            load_dotenv(env_file)
            self.logger.info(f"Loaded configuration from {env_file}")
        else:
            self.logger.debug(f"Environment file {env_file} not found, using system environment")

        if self.get_bool("VIRTUAL_ENV_REQUIRED", False):
            self._check_virtual_environment()

    def _check_virtual_environment(self):
        """Check if running in a virtual environment."""
        if not self.is_virtual_environment():
            raise ConfigurationError(
                "Virtual environment required but not detected. "
                "Please activate the virtual environment or set VIRTUAL_ENV_REQUIRED=false"
            )

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        """Get string configuration value."""
        value = os.getenv(key, default)
        if value is None:
            raise ConfigurationError(f"Required configuration key '{key}' not found")
        return value

    def get_optional_str(self, key: str) -> Optional[str]:
        """Get string configuration value, or None when unset or empty."""
        value = os.getenv(key)
        if value is None or not value.strip():
            return None
        return value.strip()

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return int(value, 0)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be an integer, got '{value}'")

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Get float configuration value."""
        value = os.getenv(key)
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
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Get path configuration value. Relative paths resolve against the working directory."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            value = str(default)

        path = Path(value).expanduser()
        if not path.is_absolute():
            path = Path.cwd() / path

        return path

    # Storage Configuration
    @property
    def db_path(self) -> Path:
        return self.get_path("DB_PATH", "./data/weatherhub.db")

    # HTTP API Configuration
    @property
    def api_enabled(self) -> bool:
        return self.get_bool("API_ENABLED", True)

    @property
    def host(self) -> str:
        return self.get_str("HOST", "127.0.0.1")

    @property
    def port(self) -> int:
        return self.get_int("PORT", 8080)

    # MQTT Configuration
    @property
    def mqtt_server_url(self) -> Optional[str]:
        """Broker URL (mqtt://host:port or mqtts://host:port); None disables distribution."""
        return self.get_optional_str("MQTT_SERVER_URL")

    @property
    def mqtt_cert_file(self) -> Optional[Path]:
        value = self.get_optional_str("MQTT_CERT_FILE")
        return self.get_path("MQTT_CERT_FILE") if value else None

    @property
    def mqtt_client_id(self) -> str:
        return self.get_str("MQTT_CLIENT_ID", "ble-weatherstation-central")

    @property
    def mqtt_keepalive(self) -> int:
        return self.get_int("MQTT_KEEPALIVE", 60)

    @property
    def mqtt_topic_prefix(self) -> str:
        return self.get_str("MQTT_TOPIC_PREFIX", "sensors/weatherstation").rstrip("/")

    @property
    def mqtt_qos(self) -> int:
        return self.get_int("MQTT_QOS", 0)

    @property
    def mqtt_buffer_size(self) -> int:
        return self.get_int("MQTT_BUFFER_SIZE", 1000)

    @property
    def mqtt_reconnect_min_delay(self) -> float:
        return self.get_float("MQTT_RECONNECT_MIN_DELAY", 1.0)

    @property
    def mqtt_reconnect_max_delay(self) -> float:
        return self.get_float("MQTT_RECONNECT_MAX_DELAY", 60.0)

    # BLE Configuration
    @property
    def ble_enabled(self) -> bool:
        return self.get_bool("BLE_ENABLED", True)

    @property
    def ble_adapter(self) -> str:
        """Get BLE adapter ("auto" lets bleak pick the default one)."""
        return self.get_str("BLE_ADAPTER", "auto")

    @property
    def ble_service_uuid(self) -> str:
        return self.get_str("BLE_SERVICE_UUID", "00000000-cc7a-482a-984a-7f2ed5b3e58f").lower()

    @property
    def ble_notify_char_uuid(self) -> str:
        return self.get_str("BLE_NOTIFY_CHAR_UUID", "00000000-8e22-4541-9d4c-21edae82ed19").lower()

    @property
    def ble_manufacturer_id(self) -> int:
        return self.get_int("BLE_MANUFACTURER_ID", 0xFFFF)

    @property
    def ble_connect_timeout(self) -> float:
        return self.get_float("BLE_CONNECT_TIMEOUT", 20.0)

    @property
    def ble_retry_delay(self) -> float:
        return self.get_float("BLE_RETRY_DELAY", 1.0)

    @property
    def ble_reconnect_max_delay(self) -> float:
        return self.get_float("BLE_RECONNECT_MAX_DELAY", 30.0)

    # Demo Source Configuration
    @property
    def demo_sensors(self) -> int:
        """Number of simulated sensors (0 disables the demo source)."""
        return self.get_int("DEMO", 0)

    @property
    def demo_interval(self) -> float:
        return self.get_float("DEMO_INTERVAL", 30.0)

    # Pipeline Configuration
    @property
    def pipeline_queue_size(self) -> int:
        return self.get_int("PIPELINE_QUEUE_SIZE", 256)

    @property
    def store_retry_attempts(self) -> int:
        return self.get_int("STORE_RETRY_ATTEMPTS", 3)

    @property
    def store_retry_delay(self) -> float:
        return self.get_float("STORE_RETRY_DELAY", 0.5)

    @property
    def store_retry_max_delay(self) -> float:
        return self.get_float("STORE_RETRY_MAX_DELAY", 10.0)

    @property
    def stats_log_interval(self) -> int:
        return self.get_int("STATS_LOG_INTERVAL", 300)

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
    def log_enable_syslog(self) -> bool:
        return self.get_bool("LOG_ENABLE_SYSLOG", False)

    @property
    def log_enable_file(self) -> bool:
        return self.get_bool("LOG_ENABLE_FILE", True)

    def validate_configuration(self) -> bool:
        """
        Validate all configuration values.

        Returns:
            bool: True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        # Validate HTTP API configuration
        try:
            if self.port < 1 or self.port > 65535:
                errors.append("PORT must be between 1 and 65535")
            if not self.host:
                errors.append("HOST cannot be empty")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate MQTT configuration
        try:
            url = self.mqtt_server_url
            if url is not None:
                parsed = urlparse(url)
                if parsed.scheme not in ('mqtt', 'mqtts'):
                    errors.append("MQTT_SERVER_URL must use the mqtt:// or mqtts:// scheme")
                elif not parsed.hostname:
                    errors.append("MQTT_SERVER_URL must contain a host")
                if parsed.scheme == 'mqtts' and self.mqtt_cert_file is None:
                    errors.append("MQTT_CERT_FILE is required for mqtts:// connections")
            cert_file = self.mqtt_cert_file
            if cert_file is not None and not cert_file.exists():
                errors.append(f"MQTT_CERT_FILE {cert_file} does not exist")
            if self.mqtt_qos not in (0, 1, 2):
                errors.append("MQTT_QOS must be 0, 1 or 2")
            if self.mqtt_buffer_size < 1:
                errors.append("MQTT_BUFFER_SIZE must be at least 1")
            if self.mqtt_reconnect_min_delay <= 0:
                errors.append("MQTT_RECONNECT_MIN_DELAY must be positive")
            if self.mqtt_reconnect_max_delay < self.mqtt_reconnect_min_delay:
                errors.append("MQTT_RECONNECT_MAX_DELAY cannot be lower than MQTT_RECONNECT_MIN_DELAY")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate BLE configuration
        try:
            if self.ble_connect_timeout <= 0:
                errors.append("BLE_CONNECT_TIMEOUT must be positive")
            if self.ble_retry_delay < 0:
                errors.append("BLE_RETRY_DELAY cannot be negative")
            if not 0 <= self.ble_manufacturer_id <= 0xFFFF:
                errors.append("BLE_MANUFACTURER_ID must be a 16-bit company identifier")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate demo and pipeline configuration
        try:
            if self.demo_sensors < 0:
                errors.append("DEMO cannot be negative")
            if self.demo_interval <= 0:
                errors.append("DEMO_INTERVAL must be positive")
            if self.pipeline_queue_size < 1:
                errors.append("PIPELINE_QUEUE_SIZE must be at least 1")
            if self.store_retry_attempts < 1:
                errors.append("STORE_RETRY_ATTEMPTS must be at least 1")
            if self.store_retry_delay < 0:
                errors.append("STORE_RETRY_DELAY cannot be negative")
        except ConfigurationError as e:
            errors.append(str(e))

        # Validate log level
        try:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if self.log_level not in valid_levels:
                errors.append(f"LOG_LEVEL must be one of {valid_levels}")
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> dict:
        """Get configuration summary for logging/debugging."""
        mqtt_url = self.mqtt_server_url
        if mqtt_url:
            parsed = urlparse(mqtt_url)
            # Credentials never leave the process
            mqtt_url = f"{parsed.scheme}://{parsed.hostname}:{parsed.port or ''}".rstrip(':')

        return {
            'storage': {
                'db_path': str(self.db_path),
            },
            'api': {
                'enabled': self.api_enabled,
                'host': self.host,
                'port': self.port,
            },
            'mqtt': {
                'enabled': mqtt_url is not None,
                'server_url': mqtt_url,
                'client_id': self.mqtt_client_id,
                'topic_prefix': self.mqtt_topic_prefix,
                'qos': self.mqtt_qos,
                'buffer_size': self.mqtt_buffer_size,
            },
            'ble': {
                'enabled': self.ble_enabled,
                'adapter': self.ble_adapter,
                'service_uuid': self.ble_service_uuid,
                'notify_char_uuid': self.ble_notify_char_uuid,
                'manufacturer_id': f"0x{self.ble_manufacturer_id:04X}",
            },
            'demo': {
                'sensors': self.demo_sensors,
                'interval': self.demo_interval,
            },
            'pipeline': {
                'queue_size': self.pipeline_queue_size,
                'store_retry_attempts': self.store_retry_attempts,
                'store_retry_delay': self.store_retry_delay,
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
                'enable_file': self.log_enable_file,
                'enable_syslog': self.log_enable_syslog,
            },
        }

    def is_virtual_environment(self) -> bool:
        """Check if running in a virtual environment."""
        return (hasattr(sys, 'real_prefix') or
                (hasattr(sys, 'base_prefix') and sys.base_prefix != sys.prefix) or
                'VIRTUAL_ENV' in os.environ)
