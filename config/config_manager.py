"""Configuration manager for the Collaborative Sync Core.

This module handles loading, validating, and persisting configuration.
"""

import os
import yaml
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from core.error_handler import ConfigurationError


@dataclass
class TransportConfig:
    """Transport configuration settings."""
    api_base_url: str = "http://localhost:3001/api"
    streaming_host: str = "localhost"
    streaming_port: int = 3002
    streaming_send_timeout: float = 10.0
    request_timeout: float = 30.0
    prefer_streaming: bool = True


@dataclass
class CacheConfig:
    """Resource URL cache settings."""
    ttl_seconds: int = 72000  # 20 hours
    eviction_interval: int = 1800  # 30 minutes


@dataclass
class ProxyConfig:
    """Thumbnail proxy settings."""
    base_url: str = "http://localhost:3001/api"


@dataclass
class FeatureFlagConfig:
    """Feature flag defaults."""
    ws_sync_enabled: bool = True
    realtime_collaboration: bool = True
    async_snapshots: bool = False
    ws_debug_mode: bool = False


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    log_path: str = "~/.collab_sync/logs/sync.log"
    max_log_size: int = 10485760  # 10 MB
    backup_count: int = 5


SECTIONS = {
    'transport': TransportConfig,
    'cache': CacheConfig,
    'proxy': ProxyConfig,
    'feature_flags': FeatureFlagConfig,
    'logging': LoggingConfig,
}


def default_config() -> Dict[str, Dict[str, Any]]:
    """Return default configuration built from the section dataclasses."""
    return {name: asdict(section()) for name, section in SECTIONS.items()}


class ConfigManager:
    """Manages configuration with validation and persistence."""

    DEFAULT_CONFIG_PATH = Path.home() / ".collab_sync" / "config" / "settings.yaml"
    ENV_PREFIX = "COLLAB_SYNC_"

    def __init__(self, config_path: Optional[Path] = None, save_defaults: bool = True):
        """Initialize configuration manager.

        Args:
            config_path: Optional custom path to configuration file.
                        If None, uses default user config path.
            save_defaults: Write the defaults to config_path when it does not exist
        """
        self.config_path = Path(config_path) if config_path else self.DEFAULT_CONFIG_PATH
        self._config: Dict[str, Any] = {}
        self._load_config(save_defaults)

    def _load_config(self, save_defaults: bool) -> None:
        """Load configuration from file with fallback to defaults."""
        defaults = default_config()

        if self.config_path.exists():
            user_config = self._load_yaml(self.config_path)
            # Merge user config over defaults
            self._config = self._merge_configs(defaults, user_config)
        else:
            self._config = defaults
            if save_defaults:
                self.save_config()

        self._apply_env_overrides()
        self._validate_config()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML configuration file.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary containing configuration

        Raises:
            ConfigurationError: If the file is not valid YAML or not a mapping
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge two configuration dictionaries.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration.

        Environment variables are prefixed with COLLAB_SYNC_ and use
        double underscores between section and key. For example:
        COLLAB_SYNC_CACHE__TTL_SECONDS=3600
        """
        for env_key, env_value in os.environ.items():
            if not env_key.startswith(self.ENV_PREFIX):
                continue

            config_key = env_key[len(self.ENV_PREFIX):].lower()
            parts = config_key.split("__")

            if len(parts) != 2:
                continue

            section, key = parts

            if section not in self._config:
                continue

            self._config[section][key] = self._convert_env_value(env_value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type.

        Args:
            value: String value from environment variable

        Returns:
            Converted value (bool, int, float, or str)
        """
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def _validate_config(self) -> None:
        """Validate configuration has all required fields and correct types."""
        for section in SECTIONS:
            if section not in self._config or not isinstance(self._config[section], dict):
                raise ConfigurationError(f"Missing required configuration section: {section}")

        transport = self._config['transport']
        self._validate_field(transport, 'api_base_url', str)
        self._validate_field(transport, 'streaming_host', str)
        self._validate_field(transport, 'streaming_port', int, 1, 65535)
        self._validate_field(transport, 'streaming_send_timeout', (int, float), 0.1, 300)
        self._validate_field(transport, 'request_timeout', (int, float), 0.1, 600)
        self._validate_field(transport, 'prefer_streaming', bool)

        cache = self._config['cache']
        self._validate_field(cache, 'ttl_seconds', int, 1, 7 * 24 * 3600)
        self._validate_field(cache, 'eviction_interval', int, 1, 24 * 3600)

        proxy = self._config['proxy']
        self._validate_field(proxy, 'base_url', str)

        flags = self._config['feature_flags']
        for flag in ('ws_sync_enabled', 'realtime_collaboration', 'async_snapshots', 'ws_debug_mode'):
            self._validate_field(flags, flag, bool)

        logging_section = self._config['logging']
        self._validate_field(logging_section, 'level', str)
        self._validate_field(logging_section, 'log_path', str)
        self._validate_field(logging_section, 'max_log_size', int, 1024, 104857600)
        self._validate_field(logging_section, 'backup_count', int, 0, 100)

    def _validate_field(self, section: Dict[str, Any], field: str,
                       expected_type, min_val: Optional[float] = None,
                       max_val: Optional[float] = None) -> None:
        """Validate a configuration field.

        Args:
            section: Configuration section dictionary
            field: Field name to validate
            expected_type: Expected type (or tuple of types) of the field
            min_val: Optional minimum value for numeric fields
            max_val: Optional maximum value for numeric fields

        Raises:
            ConfigurationError: If validation fails
        """
        if field not in section:
            raise ConfigurationError(f"Missing required field: {field}")

        value = section[field]
        types = expected_type if isinstance(expected_type, tuple) else (expected_type,)
        numeric = any(t in (int, float) for t in types)

        # bool is an int subclass; never accept it for numeric fields
        if not isinstance(value, types) or (numeric and isinstance(value, bool)):
            type_names = "/".join(t.__name__ for t in types)
            raise ConfigurationError(
                f"Field {field} must be of type {type_names}, "
                f"got {type(value).__name__}"
            )

        if numeric and min_val is not None and value < min_val:
            raise ConfigurationError(f"Field {field} must be >= {min_val}, got {value}")

        if numeric and max_val is not None and value > max_val:
            raise ConfigurationError(f"Field {field} must be <= {max_val}, got {value}")

    def save_config(self) -> None:
        """Save current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)

    def get_config(self, section: str, key: Optional[str] = None) -> Any:
        """Get configuration value.

        Args:
            section: Configuration section name
            key: Optional key within section. If None, returns entire section.

        Returns:
            Configuration value

        Raises:
            KeyError: If section or key doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        if key is None:
            return self._config[section]

        if key not in self._config[section]:
            raise KeyError(f"Configuration key not found: {section}.{key}")

        return self._config[section][key]

    def set_config(self, section: str, key: str, value: Any) -> None:
        """Set configuration value.

        Args:
            section: Configuration section name
            key: Key within section
            value: Value to set

        Raises:
            KeyError: If section doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        self._config[section][key] = value

    def _section(self, name: str):
        # Unknown keys in the file are tolerated but not passed to the dataclass
        cls = SECTIONS[name]
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in self._config[name].items() if k in fields})

    def get_transport_config(self) -> TransportConfig:
        """Get transport configuration as dataclass."""
        return self._section('transport')

    def get_cache_config(self) -> CacheConfig:
        """Get cache configuration as dataclass."""
        return self._section('cache')

    def get_proxy_config(self) -> ProxyConfig:
        """Get proxy configuration as dataclass."""
        return self._section('proxy')

    def get_feature_flag_config(self) -> FeatureFlagConfig:
        """Get feature flag defaults as dataclass."""
        return self._section('feature_flags')

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration as dataclass."""
        return self._section('logging')

    def expand_path(self, path: str) -> Path:
        """Expand user home directory and environment variables in path.

        Args:
            path: Path string potentially containing ~ or environment variables

        Returns:
            Expanded Path object
        """
        return Path(os.path.expanduser(os.path.expandvars(path)))


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager(config_path: Optional[Path] = None) -> ConfigManager:
    """Get or create global configuration manager instance.

    Args:
        config_path: Optional custom path to configuration file

    Returns:
        ConfigManager instance
    """
    global _config_manager

    if _config_manager is None:
        _config_manager = ConfigManager(config_path)

    return _config_manager
