"""
Unit tests for configuration loading and validation.

Tests strict validation, the config directory and environment overrides.
"""

import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from token_sync.config.loader import (
    DEFAULT_API_BASE_URL,
    LOCAL_API_DEFAULT,
    Config,
    ConfigError,
    SyncMode,
    get_config_dir,
    is_local_only,
    load_config,
    parse_config,
    read_config,
    resolve_api_base_url,
    set_config_value,
    unset_config_value,
    write_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.config_dir = Path(self.temp_dir)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> Path:
        """Write configuration data to temporary file."""
        config_path = self.config_dir / filename
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        path = self._write_config({
            "version": 1,
            "usage_path": "/data/usage",
            "api_base_url": "https://example.test",
            "local_only": True,
            "sync_mode": "manual",
        })

        config = load_config(path)

        assert config.usage_path == "/data/usage"
        assert config.api_base_url == "https://example.test"
        assert config.local_only is True
        assert config.sync_mode == SyncMode.MANUAL

    def test_missing_file_returns_defaults(self):
        config, exists = read_config(self.config_dir)

        assert exists is False
        assert config == Config()
        assert config.api_base_url == DEFAULT_API_BASE_URL

    def test_empty_file_returns_defaults(self):
        (self.config_dir / "config.yaml").write_text("", encoding="utf-8")

        config, exists = read_config(self.config_dir)

        assert exists is True
        assert config == Config()

    def test_unknown_keys_rejected(self):
        path = self._write_config({"usage_path": "/x", "colour": "blue"})

        with pytest.raises(ConfigError, match="Unknown configuration keys"):
            load_config(path)

    def test_wrong_types_rejected(self):
        with pytest.raises(ConfigError, match="must be true or false"):
            parse_config({"local_only": "yes"})
        with pytest.raises(ConfigError, match="must be a string"):
            parse_config({"usage_path": 5})
        with pytest.raises(ConfigError, match="sync_mode"):
            parse_config({"sync_mode": "sometimes"})

    def test_invalid_yaml_raises_config_error(self):
        path = self.config_dir / "config.yaml"
        path.write_text("usage_path: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError, match="Invalid config YAML"):
            load_config(path)

    def test_non_mapping_rejected(self):
        with pytest.raises(ConfigError, match="must be a mapping"):
            parse_config(["a", "b"])

    def test_write_then_read(self):
        config = Config(usage_path="/logs", local_only=True)

        path = write_config(config, self.config_dir)
        loaded, exists = read_config(self.config_dir)

        assert exists is True
        assert loaded == config
        assert oct(path.stat().st_mode & 0o777) == oct(0o600)


class TestConfigValues:
    """Test CLI-driven set and unset."""

    def test_set_boolean(self):
        assert set_config_value(Config(), "local_only", "yes").local_only is True
        assert set_config_value(Config(local_only=True), "local_only", "off").local_only is False

    def test_set_invalid_boolean(self):
        with pytest.raises(ConfigError):
            set_config_value(Config(), "local_only", "maybe")

    def test_set_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown config key"):
            set_config_value(Config(), "colour", "blue")

    def test_set_and_unset_string(self):
        config = set_config_value(Config(), "usage_path", " /logs ")
        assert config.usage_path == "/logs"

        assert unset_config_value(config, "usage_path").usage_path is None

    def test_unset_restores_default_url(self):
        config = Config(api_base_url="https://other.test")
        assert unset_config_value(config, "api_base_url").api_base_url == DEFAULT_API_BASE_URL


class TestEnvironment:
    """Test environment overrides."""

    def test_home_override(self):
        with patch.dict(os.environ, {"TOKEN_SYNC_HOME": "/tmp/ts-home"}):
            assert get_config_dir() == Path("/tmp/ts-home")

    def test_local_api_override(self):
        with patch.dict(os.environ, {"TOKEN_SYNC_LOCAL_API": "1"}):
            assert resolve_api_base_url(Config()) == LOCAL_API_DEFAULT
        with patch.dict(os.environ, {"TOKEN_SYNC_LOCAL_API": "http://127.0.0.1:9000"}):
            assert resolve_api_base_url(Config()) == "http://127.0.0.1:9000"

    def test_env_base_url_used_when_config_blank(self):
        with patch.dict(os.environ, {"TOKEN_SYNC_API_BASE_URL": "https://env.test"}):
            os.environ.pop("TOKEN_SYNC_LOCAL_API", None)
            assert resolve_api_base_url(Config(api_base_url=None)) == "https://env.test"

    def test_local_only_sources(self):
        with patch.dict(os.environ, {"TOKEN_SYNC_LOCAL_ONLY": "true"}):
            assert is_local_only(Config()) is True
        with patch.dict(os.environ, {"TOKEN_SYNC_LOCAL_ONLY": ""}):
            assert is_local_only(Config()) is False
            assert is_local_only(Config(), flag=True) is True
            assert is_local_only(Config(local_only=True)) is True
