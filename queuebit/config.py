"""
Configuration management supporting both file-based and environment variable configurations.
"""
import os
import json
import logging
from typing import Any, Dict, Optional


class Config:
    """Configuration manager with defaults and environment variable support"""

    # Default configuration values
    DEFAULTS = {
        # Server settings
        'server': {
            'host': '127.0.0.1',
            'port': 3333,
            'max_connections': 100,
            'connection_timeout': 300,  # 5 minutes
            'heartbeat_interval': 25,   # seconds
            'max_frame_size': 100 * 1000 * 1000,  # bytes
        },

        # Routing and retention
        'broker': {
            'max_queue_size': 10000,    # retained messages per subject
            'delivery_batch_size': 100,
            'expiry_sweep_interval_ms': 1000,
            'default_subject': 'default',
        },

        # Client settings
        'client': {
            'request_timeout': 5,       # seconds
            'heartbeat_interval': 25,   # seconds
        },

        # Logging
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'file': None,  # None means console only
        }
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config = self._deep_copy(self.DEFAULTS)

        # Load from file if provided
        if config_file and os.path.exists(config_file):
            self._load_from_file(config_file)

        # Override with environment variables
        self._load_from_env()

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.
        Example: config.get('broker.max_queue_size') returns the per-subject capacity
        """
        keys = key_path.split('.')
        value = self._config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def get_int(self, key_path: str, default: int, minimum: int = 1) -> int:
        """Get an integer setting, rejecting values below ``minimum``"""
        value = self.get(key_path, default)
        try:
            value = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Setting '{key_path}' must be an integer, got {value!r}")
        if value < minimum:
            raise ValueError(f"Setting '{key_path}' must be >= {minimum}, got {value}")
        return value

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        keys = key_path.split('.')
        config = self._config

        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]

        config[keys[-1]] = value

    def _load_from_file(self, config_file: str) -> None:
        """Load configuration from JSON file"""
        try:
            with open(config_file, 'r') as f:
                file_config = json.load(f)
            self._merge_config(self._config, file_config)
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config file {config_file}: {e}")

    def _load_from_env(self) -> None:
        """Load configuration from environment variables"""
        env_mappings = {
            'QB_SERVER_HOST': 'server.host',
            'QB_SERVER_PORT': 'server.port',
            'QB_MAX_CONNECTIONS': 'server.max_connections',
            'QB_CONNECTION_TIMEOUT': 'server.connection_timeout',
            'QB_HEARTBEAT_INTERVAL': 'server.heartbeat_interval',
            'QB_MAX_QUEUE_SIZE': 'broker.max_queue_size',
            'QB_DELIVERY_BATCH_SIZE': 'broker.delivery_batch_size',
            'QB_EXPIRY_SWEEP_INTERVAL_MS': 'broker.expiry_sweep_interval_ms',
            'QB_LOG_LEVEL': 'logging.level',
        }

        for env_var, config_key in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                # Try to convert to appropriate type
                value = self._convert_env_value(env_value)
                self.set(config_key, value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to int, float or bool where possible"""
        for convert in (int, float):
            try:
                return convert(value)
            except ValueError:
                continue

        lowered = value.lower()
        if lowered in ('true', 'yes', 'on'):
            return True
        if lowered in ('false', 'no', 'off'):
            return False
        return value

    def _merge_config(self, base: Dict, override: Dict) -> None:
        """Recursively merge configuration dictionaries"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_config(base[key], value)
            else:
                base[key] = value

    def _deep_copy(self, obj: Any) -> Any:
        """Deep copy configuration"""
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        else:
            return obj

    def save_to_file(self, config_file: str) -> None:
        """Save current configuration to file"""
        try:
            with open(config_file, 'w') as f:
                json.dump(self._config, f, indent=2)
        except OSError as e:
            logging.error(f"Failed to save config to {config_file}: {e}")

    def __str__(self) -> str:
        return json.dumps(self._config, indent=2)


# Global configuration instance
_config_instance: Optional[Config] = None

def get_config() -> Config:
    """Get global configuration instance"""
    global _config_instance
    if _config_instance is None:
        config_file = os.getenv('QB_CONFIG_FILE', 'config/broker.json')
        _config_instance = Config(config_file)
    return _config_instance

def initialize_config(config_file: Optional[str] = None) -> Config:
    """Initialize global configuration"""
    global _config_instance
    _config_instance = Config(config_file)
    return _config_instance
