"""
Unit tests for configuration.
"""

import pytest

from pathdb.config import (
    BackendKind,
    GovernorConfig,
    LimitsConfig,
    ObservabilityConfig,
    StorageConfig,
    StoreConfig,
)


class TestStoreConfig:
    """Tests for StoreConfig."""

    def test_defaults_are_valid(self):
        """Default configuration validates."""
        config = StoreConfig()
        config.validate()
        assert config.storage.backend is BackendKind.MEMORY
        assert config.limits.max_batch_size == 500
        assert config.feed.deliver_initial_snapshot is True

    def test_file_backend_requires_data_dir(self):
        """SQLite and journal backends need a data directory."""
        config = StoreConfig(storage=StorageConfig(backend=BackendKind.SQLITE))
        with pytest.raises(ValueError):
            config.validate()

    def test_non_positive_limits_rejected(self):
        """Ceilings must be positive."""
        with pytest.raises(ValueError):
            StoreConfig(governor=GovernorConfig(general_per_minute=0)).validate()
        with pytest.raises(ValueError):
            StoreConfig(limits=LimitsConfig(max_query_limit=0)).validate()

    def test_unknown_log_format_rejected(self):
        """Only json and text log formats exist."""
        with pytest.raises(ValueError):
            StoreConfig(observability=ObservabilityConfig(log_format="xml")).validate()

    def test_from_env(self, monkeypatch, tmp_path):
        """Environment variables override defaults."""
        monkeypatch.setenv("PATHDB_BACKEND", "journal")
        monkeypatch.setenv("PATHDB_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("PATHDB_RATE_GENERAL", "42")
        monkeypatch.setenv("PATHDB_RATE_LIMIT_ENABLED", "false")
        monkeypatch.setenv("PATHDB_MAX_BATCH_SIZE", "10")
        monkeypatch.setenv("PATHDB_FEED_INITIAL_SNAPSHOT", "false")

        config = StoreConfig.from_env()

        assert config.storage.backend is BackendKind.JOURNAL
        assert config.storage.data_dir == str(tmp_path)
        assert config.governor.general_per_minute == 42
        assert config.governor.enabled is False
        assert config.limits.max_batch_size == 10
        assert config.feed.deliver_initial_snapshot is False

    def test_from_env_rejects_unknown_backend(self, monkeypatch):
        """Unknown backend names fail fast."""
        monkeypatch.setenv("PATHDB_BACKEND", "oracle")
        with pytest.raises(ValueError):
            StoreConfig.from_env()
