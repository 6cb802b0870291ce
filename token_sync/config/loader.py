"""
Configuration management and loading.

Handles the YAML config file, its location and environment overrides.
"""

import os
import sys
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from token_sync.storage.files import write_private_file

APP_DIR_NAME = "token-sync"
CONFIG_FILE = "config.yaml"
CONFIG_VERSION = 1

DEFAULT_API_BASE_URL = "https://usageleaderboard.com"
LOCAL_API_DEFAULT = "http://localhost:4321"

ENV_HOME = "TOKEN_SYNC_HOME"
ENV_API_BASE_URL = "TOKEN_SYNC_API_BASE_URL"
ENV_LOCAL_API = "TOKEN_SYNC_LOCAL_API"
ENV_LOCAL_ONLY = "TOKEN_SYNC_LOCAL_ONLY"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised when the config file cannot be read or is invalid."""


class SyncMode(Enum):
    """How syncing is triggered on this device."""
    BACKGROUND = "background"
    MANUAL = "manual"


@dataclass(frozen=True)
class Config:
    """Validated token-sync configuration."""
    usage_path: Optional[str] = None
    api_base_url: Optional[str] = DEFAULT_API_BASE_URL
    local_only: bool = False
    sync_mode: Optional[SyncMode] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": CONFIG_VERSION}
        if self.usage_path is not None:
            data["usage_path"] = self.usage_path
        if self.api_base_url is not None:
            data["api_base_url"] = self.api_base_url
        data["local_only"] = self.local_only
        if self.sync_mode is not None:
            data["sync_mode"] = self.sync_mode.value
        return data


CONFIG_KEYS = ("usage_path", "api_base_url", "local_only", "sync_mode")


def get_config_dir() -> Path:
    """Resolve the directory holding config, state, queue and logs.

    `TOKEN_SYNC_HOME` wins; otherwise the platform's per-user config
    directory is used.
    """
    override = os.environ.get(ENV_HOME, "").strip()
    if override:
        return Path(override).expanduser()

    home = Path.home()
    if sys.platform == "win32":
        app_data = os.environ.get("APPDATA")
        base = Path(app_data) if app_data else home / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIR_NAME

    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config) if xdg_config else home / ".config"
    return base / APP_DIR_NAME


def get_config_file_path(config_dir: Optional[Path] = None) -> Path:
    return (config_dir or get_config_dir()) / CONFIG_FILE


def parse_bool(raw: str) -> bool:
    """Parse a yes/no style string.

    Raises:
        ValueError: If the string is not a recognised boolean
    """
    normalized = raw.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean value, got: {raw!r}")


def parse_config(raw_config: Any, source: str = "config") -> Config:
    """Validate raw YAML data into a Config.

    Args:
        raw_config: Result of `yaml.safe_load`
        source: Name used in error messages

    Returns:
        Validated Config

    Raises:
        ConfigError: If the data has unknown keys or wrong types
    """
    if raw_config is None:
        return Config()
    if not isinstance(raw_config, dict):
        raise ConfigError(f"{source} must be a mapping")

    allowed_keys = set(CONFIG_KEYS) | {"version"}
    unknown_keys = set(raw_config.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigError(f"Unknown configuration keys in {source}: {sorted(unknown_keys)}")

    version = raw_config.get("version", CONFIG_VERSION)
    if version != CONFIG_VERSION:
        raise ConfigError(f"Unsupported config version in {source}: {version}")

    values: Dict[str, Any] = {}

    for key in ("usage_path", "api_base_url"):
        if key not in raw_config:
            continue
        value = raw_config[key]
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"'{key}' in {source} must be a string")
        values[key] = (value.strip() or None) if isinstance(value, str) else None

    if "local_only" in raw_config:
        local_only = raw_config["local_only"]
        if not isinstance(local_only, bool):
            raise ConfigError(f"'local_only' in {source} must be true or false")
        values["local_only"] = local_only

    if raw_config.get("sync_mode") is not None:
        mode = raw_config["sync_mode"]
        try:
            values["sync_mode"] = SyncMode(str(mode).lower())
        except ValueError:
            valid_modes = [m.value for m in SyncMode]
            raise ConfigError(f"'sync_mode' in {source} must be one of: {valid_modes}")

    return Config(**values)


def load_config(path: Path) -> Config:
    """Load and validate a config file.

    Raises:
        ConfigError: If the file is unreadable, not valid YAML or invalid
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid config YAML at {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Unable to read config at {path}: {e}")
    return parse_config(raw_config, str(path))


def read_config(config_dir: Optional[Path] = None) -> Tuple[Config, bool]:
    """Read the config file, returning defaults when it does not exist.

    Returns:
        The config and whether a config file exists

    Raises:
        ConfigError: If the file exists but is invalid
    """
    path = get_config_file_path(config_dir)
    if not path.exists():
        return Config(), False
    return load_config(path), True


def write_config(config: Config, config_dir: Optional[Path] = None) -> Path:
    path = get_config_file_path(config_dir)
    write_private_file(path, yaml.safe_dump(config.to_dict(), sort_keys=False))
    return path


def set_config_value(config: Config, key: str, raw_value: str) -> Config:
    """Return a copy of `config` with one key set from a CLI string.

    Raises:
        ConfigError: If the key is unknown or the value is invalid
    """
    if key not in CONFIG_KEYS:
        raise ConfigError(f"Unknown config key: {key}. Valid keys: {', '.join(CONFIG_KEYS)}")

    if key == "local_only":
        try:
            return replace(config, local_only=parse_bool(raw_value))
        except ValueError as e:
            raise ConfigError(str(e))
    if key == "sync_mode":
        try:
            return replace(config, sync_mode=SyncMode(raw_value.strip().lower()))
        except ValueError:
            valid_modes = [m.value for m in SyncMode]
            raise ConfigError(f"sync_mode must be one of: {valid_modes}")
    return replace(config, **{key: raw_value.strip() or None})


def unset_config_value(config: Config, key: str) -> Config:
    """Return a copy of `config` with one key back at its default."""
    if key not in CONFIG_KEYS:
        raise ConfigError(f"Unknown config key: {key}. Valid keys: {', '.join(CONFIG_KEYS)}")
    return replace(config, **{key: getattr(Config(), key)})


def is_env_truthy(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in _TRUE_VALUES


def _resolve_local_api_base_url() -> Optional[str]:
    raw = os.environ.get(ENV_LOCAL_API, "").strip()
    normalized = raw.lower()
    if not normalized or normalized in _FALSE_VALUES:
        return None
    if normalized.startswith(("http://", "https://")):
        return raw
    return LOCAL_API_DEFAULT


def resolve_api_base_url(config: Config) -> Optional[str]:
    """API base URL: local override, then config, then environment."""
    return (
        _resolve_local_api_base_url()
        or config.api_base_url
        or os.environ.get(ENV_API_BASE_URL)
        or None
    )


def is_local_only(config: Config, flag: bool = False) -> bool:
    """Local-only mode from the CLI flag, the config or the environment."""
    return flag or config.local_only or is_env_truthy(ENV_LOCAL_ONLY)
