"""
Unit tests for configuration loading and validation.
"""

import dataclasses

import pytest

from dbaas.docbase_server.config import (
    QueryConfig,
    ServerConfig,
    StorageBackend,
    StorageConfig,
)
from dbaas.docbase_server.storage import (
    InMemoryDocumentStore,
    SqliteDocumentStore,
    create_document_store,
)

ENV_VARS = (
    "STORAGE_BACKEND",
    "DATA_DIR",
    "SQLITE_DATABASE_FILE",
    "ALLOW_CLIENT_CLASS_CREATION",
    "QUERY_MAX_WHERE_DEPTH",
    "QUERY_MAX_DESUGAR_PASSES",
    "LOG_FORMAT",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestFromEnv:
    """Tests for environment loading."""

    def test_defaults(self, tmp_path, monkeypatch):
        """Unset variables fall back to defaults."""
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        config = ServerConfig.from_env()

        assert config.storage.backend == StorageBackend.SQLITE
        assert config.storage.database_file == "docbase.db"
        assert config.query.allow_client_class_creation is True
        assert config.query.max_where_depth == 64
        assert config.observability.log_format == "json"

    def test_overrides(self, monkeypatch):
        """Variables override defaults."""
        monkeypatch.setenv("STORAGE_BACKEND", "MEMORY")
        monkeypatch.setenv("ALLOW_CLIENT_CLASS_CREATION", "false")
        monkeypatch.setenv("QUERY_MAX_DESUGAR_PASSES", "8")
        config = ServerConfig.from_env()

        assert config.storage.backend == StorageBackend.MEMORY
        assert config.query.allow_client_class_creation is False
        assert config.query.max_desugar_passes == 8

    def test_invalid_backend(self, monkeypatch):
        """Unknown backends are rejected."""
        monkeypatch.setenv("STORAGE_BACKEND", "postgres")
        with pytest.raises(ValueError, match="STORAGE_BACKEND"):
            ServerConfig.from_env()


class TestValidate:
    """Tests for ServerConfig.validate."""

    def test_non_positive_depth(self):
        """Query limits must be positive."""
        config = ServerConfig(query=QueryConfig(max_where_depth=0))
        with pytest.raises(ValueError, match="QUERY_MAX_WHERE_DEPTH"):
            config.validate()

    def test_non_positive_passes(self):
        """Desugar passes must be positive."""
        config = ServerConfig(query=QueryConfig(max_desugar_passes=0))
        with pytest.raises(ValueError):
            config.validate()

    def test_bad_log_format(self, monkeypatch):
        """Only json and text formats exist."""
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValueError, match="LOG_FORMAT"):
            ServerConfig.from_env()

    def test_sqlite_needs_file(self, tmp_path):
        """The SQLite backend needs a database file name."""
        storage = StorageConfig(data_dir=str(tmp_path), database_file="")
        with pytest.raises(ValueError):
            ServerConfig(storage=storage).validate()


class TestCreateDocumentStore:
    """Tests for the storage factory."""

    def test_memory(self):
        """The memory backend yields the in-memory adapter."""
        store = create_document_store(StorageConfig(backend=StorageBackend.MEMORY))
        assert isinstance(store, InMemoryDocumentStore)

    def test_sqlite(self, tmp_path):
        """The SQLite backend honours data_dir and database_file."""
        config = dataclasses.replace(
            StorageConfig(), data_dir=str(tmp_path), database_file="test.db"
        )
        store = create_document_store(config)

        assert isinstance(store, SqliteDocumentStore)
        assert store.db_path == tmp_path / "test.db"
