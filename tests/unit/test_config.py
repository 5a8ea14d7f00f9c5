"""
Unit tests for environment-driven configuration.
"""

import pytest

from dbaas.topodb_server.config import (
    CascadeConfig,
    HttpConfig,
    ObservabilityConfig,
    ServerConfig,
    StorageConfig,
)


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults(self):
        """Defaults are usable for local development."""
        config = ServerConfig()
        assert config.storage.db_filename == "topodb.db"
        assert config.storage.scan_page_size == 500
        assert config.cascade.wait_on_conflict is False
        assert config.http.port == 8081
        assert config.observability.log_format == "json"

    def test_from_env(self, monkeypatch, tmp_path):
        """Every section reads its variables."""
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("DB_FILENAME", "topo.db")
        monkeypatch.setenv("SQLITE_WAL_MODE", "false")
        monkeypatch.setenv("SCAN_PAGE_SIZE", "50")
        monkeypatch.setenv("CASCADE_WAIT_ON_CONFLICT", "true")
        monkeypatch.setenv("CASCADE_CHECKPOINT_INTERVAL", "10")
        monkeypatch.setenv("HTTP_PORT", "9000")
        monkeypatch.setenv("HTTP_CORS_ORIGINS", "http://a.example, http://b.example")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServerConfig.from_env()

        assert config.storage.db_path == tmp_path / "topo.db"
        assert config.storage.wal_mode is False
        assert config.storage.scan_page_size == 50
        assert config.cascade.wait_on_conflict is True
        assert config.cascade.checkpoint_interval == 10
        assert config.http.port == 9000
        assert config.http.cors_origins == ("http://a.example", "http://b.example")
        assert config.observability.log_format == "text"

    def test_invalid_log_format(self):
        """Unknown log formats are rejected."""
        config = ServerConfig(observability=ObservabilityConfig(log_format="xml"))
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            config.validate()

    def test_invalid_page_size(self, tmp_path):
        """Page size must be positive."""
        config = ServerConfig(storage=StorageConfig(data_dir=str(tmp_path), scan_page_size=0))
        with pytest.raises(ValueError, match="SCAN_PAGE_SIZE"):
            config.validate()

    def test_invalid_checkpoint_interval(self, tmp_path):
        """Checkpoint interval must be positive."""
        config = ServerConfig(
            storage=StorageConfig(data_dir=str(tmp_path)),
            cascade=CascadeConfig(checkpoint_interval=0),
        )
        with pytest.raises(ValueError, match="CASCADE_CHECKPOINT_INTERVAL"):
            config.validate()

    def test_invalid_port(self, tmp_path):
        """Port must be in range."""
        config = ServerConfig(
            storage=StorageConfig(data_dir=str(tmp_path)),
            http=HttpConfig(port=70000),
        )
        with pytest.raises(ValueError, match="HTTP_PORT"):
            config.validate()

    def test_non_numeric_env_value(self, monkeypatch):
        """Malformed numbers fail loading."""
        monkeypatch.setenv("HTTP_PORT", "http")
        with pytest.raises(ValueError):
            ServerConfig.from_env()
