"""
Courier - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: orpheus497
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_MAX_PENDING,
    DEFAULT_RELAY_HOST,
    DEFAULT_RELAY_PORT,
    DEFAULT_RELAY_URL,
    HANDSHAKE_RETRY_DELAY,
    MAX_IDENTITY_LENGTH,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "relay": {
        "url": DEFAULT_RELAY_URL,
        "host": DEFAULT_RELAY_HOST,
        "port": DEFAULT_RELAY_PORT,
    },
    "session": {
        "room": "",
        "me": "",
        "peer": "",
        "handshake_retry_delay": HANDSHAKE_RETRY_DELAY,
        "max_pending": DEFAULT_MAX_PENDING,
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": False,
    },
}

# Short environment variables accepted alongside the COURIER_* form
ENV_ALIASES: Dict[str, tuple] = {
    "SERVER": ("relay", "url"),
    "PORT": ("relay", "port"),
    "ROOM": ("session", "room"),
    "ME": ("session", "me"),
    "PEER": ("session", "peer"),
}


class Config:
    """Configuration manager for Courier.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
            environ: Environment mapping (defaults to os.environ)
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                )
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                )

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    @staticmethod
    def _coerce(value: str, original: Any) -> Any:
        """Convert an environment string to the type of the default value."""
        if isinstance(original, bool):
            return value.lower() in ("true", "1", "yes")
        if isinstance(original, int):
            return int(value)
        if isinstance(original, float):
            return float(value)
        return value

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: COURIER_SECTION_KEY
        For example: COURIER_SESSION_ROOM=project. The short aliases in
        ENV_ALIASES are applied first so the prefixed form wins.

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied
        """
        result = copy.deepcopy(config)

        overrides = [(env_var, section, key) for env_var, (section, key) in ENV_ALIASES.items()]
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue
            for key in settings:
                overrides.append((f"COURIER_{section.upper()}_{key.upper()}", section, key))

        for env_var, section, key in overrides:
            env_value = self.environ.get(env_var)
            if env_value is None:
                continue
            try:
                result[section][key] = self._coerce(env_value, config[section][key])
            except ValueError:
                # Keep original value if conversion fails
                pass

        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    @property
    def max_pending(self) -> Optional[int]:
        """Pending queue cap, None when unbounded."""
        value = self.get("session", "max_pending", DEFAULT_MAX_PENDING)
        return value if value and value > 0 else None

    def validate_session(self) -> None:
        """Check that room and identities are usable.

        Raises:
            ConfigError: If a value is missing or invalid
        """
        for key in ("room", "me", "peer"):
            value = self.get("session", key)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(
                    ErrorCode.E703_INVALID_CONFIG,
                    f"Missing session setting: {key}",
                    {"section": "session", "key": key},
                )
            if len(value) > MAX_IDENTITY_LENGTH:
                raise ConfigError(
                    ErrorCode.E703_INVALID_CONFIG,
                    f"Session setting '{key}' exceeds {MAX_IDENTITY_LENGTH} characters",
                    {"section": "session", "key": key},
                )

        if self.get("session", "me") == self.get("session", "peer"):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "Your id and the peer id must differ",
                {"section": "session"},
            )

        delay = self.get("session", "handshake_retry_delay")
        if not isinstance(delay, (int, float)) or delay < 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "handshake_retry_delay must be a non-negative number",
                {"section": "session", "key": "handshake_retry_delay"},
            )

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)
