"""
Tests for sync configuration.
"""

from pathlib import Path

import pytest

from offline_sync.config import DEFAULT_PRIMARY_TABLES, SyncConfig
from offline_sync.exceptions import ConfigurationError


class TestSyncConfig:
    """Tests for defaults and validation."""

    def test_defaults(self):
        """Defaults match the documented retry and confirmation settings."""
        config = SyncConfig()

        assert config.batch_size == 50
        assert config.max_attempts == 5
        assert config.max_backoff_seconds == 300.0
        assert config.confirmation_timeout_seconds == 300.0
        assert config.primary_tables == DEFAULT_PRIMARY_TABLES
        assert isinstance(config.marker_path, Path)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"batch_size": 0},
            {"max_attempts": 0},
            {"initial_backoff_seconds": 0},
            {"max_backoff_seconds": 1.0},
            {"confirmation_timeout_seconds": -1},
            {"sanitize_max_depth": 0},
            {"log_level": "chatty"},
        ],
    )
    def test_invalid_values(self, kwargs):
        """Out-of-range values are rejected."""
        with pytest.raises(ConfigurationError):
            SyncConfig(**kwargs)

    def test_memory_db_path_kept(self):
        """The in-memory database path is not turned into a file path."""
        assert SyncConfig(db_path=":memory:").db_path == ":memory:"

    def test_from_dict_ignores_unknown_keys(self):
        """Unknown settings are skipped."""
        config = SyncConfig.from_dict({"batch_size": 10, "colour": "blue"})

        assert config.batch_size == 10


class TestConfigSources:
    """Tests for environment and YAML loading."""

    def test_from_env(self, monkeypatch):
        """OFFLINE_SYNC_* variables are parsed to the field types."""
        monkeypatch.setenv("OFFLINE_SYNC_BATCH_SIZE", "10")
        monkeypatch.setenv("OFFLINE_SYNC_BACKOFF_JITTER", "0.25")
        monkeypatch.setenv("OFFLINE_SYNC_REMOTE_URL", "https://api.example.com/api")
        monkeypatch.setenv("OFFLINE_SYNC_PRIMARY_TABLES", "invoices, customers")

        config = SyncConfig.from_env()

        assert config.batch_size == 10
        assert config.backoff_jitter == 0.25
        assert config.remote_url == "https://api.example.com/api"
        assert config.primary_tables == ("invoices", "customers")

    def test_from_env_bad_number(self, monkeypatch):
        """Unparseable numbers raise ConfigurationError."""
        monkeypatch.setenv("OFFLINE_SYNC_MAX_ATTEMPTS", "many")

        with pytest.raises(ConfigurationError):
            SyncConfig.from_env()

    def test_from_yaml(self, tmp_path):
        """Settings are read from the sync section."""
        path = tmp_path / "settings.yaml"
        path.write_text("sync:\n  batch_size: 5\n  remote_url: http://localhost/api\nother:\n  x: 1\n")

        config = SyncConfig.from_yaml(path)

        assert config.batch_size == 5
        assert config.remote_url == "http://localhost/api"

    def test_from_yaml_missing_file(self, tmp_path):
        """A missing file yields the defaults."""
        assert SyncConfig.from_yaml(tmp_path / "absent.yaml").batch_size == 50

    def test_from_yaml_invalid(self, tmp_path):
        """Broken YAML raises ConfigurationError."""
        path = tmp_path / "settings.yaml"
        path.write_text("sync: [unclosed\n")

        with pytest.raises(ConfigurationError):
            SyncConfig.from_yaml(path)

    def test_logging_and_owner_settings_from_env(self, monkeypatch):
        """Boolean, level and tuple settings are parsed from the environment."""
        monkeypatch.setenv("OFFLINE_SYNC_LOG_JSON", "true")
        monkeypatch.setenv("OFFLINE_SYNC_LOG_LEVEL", "debug")
        monkeypatch.setenv("OFFLINE_SYNC_OWNER_FIELDS", "userId, createdBy")

        config = SyncConfig.from_env()

        assert config.log_json is True
        assert config.log_level == "DEBUG"
        assert config.owner_fields == ("userId", "createdBy")
