"""
Configuration management for Docbase.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Query limits are always positive; validate() rejects anything else
    - Configuration objects are immutable once loaded

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Document new settings in the README
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class StorageBackend(Enum):
    """Supported document store backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class QueryConfig:
    """Query engine configuration.

    Attributes:
        allow_client_class_creation: Whether non-master callers may query
            (and thereby create) classes that do not exist yet
        max_where_depth: Maximum nesting depth of a where tree
        max_desugar_passes: Maximum operator rewrites for one query
    """

    allow_client_class_creation: bool = True
    max_where_depth: int = 64
    max_desugar_passes: int = 256

    @classmethod
    def from_env(cls) -> QueryConfig:
        """Load configuration from environment variables."""
        return cls(
            allow_client_class_creation=_env_bool("ALLOW_CLIENT_CLASS_CREATION", "true"),
            max_where_depth=int(os.getenv("QUERY_MAX_WHERE_DEPTH", "64")),
            max_desugar_passes=int(os.getenv("QUERY_MAX_DESUGAR_PASSES", "256")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Document store configuration.

    Attributes:
        backend: Which adapter to use
        data_dir: Directory for the SQLite database
        database_file: SQLite database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    backend: StorageBackend = StorageBackend.SQLITE
    data_dir: str = "/var/lib/docbase"
    database_file: str = "docbase.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If STORAGE_BACKEND is not a known backend
        """
        backend_str = os.getenv("STORAGE_BACKEND", "sqlite").lower()
        try:
            backend = StorageBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid STORAGE_BACKEND '{backend_str}'. Must be one of: memory, sqlite"
            )
        return cls(
            backend=backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/docbase"),
            database_file=os.getenv("SQLITE_DATABASE_FILE", "docbase.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete configuration.

    Attributes:
        query: Query engine configuration
        storage: Document store configuration
        observability: Logging configuration
    """

    query: QueryConfig = field(default_factory=QueryConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If configuration is missing or invalid.
        """
        config = cls(
            query=QueryConfig.from_env(),
            storage=StorageConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.query.max_where_depth < 1:
            raise ValueError("QUERY_MAX_WHERE_DEPTH must be positive")
        if self.query.max_desugar_passes < 1:
            raise ValueError("QUERY_MAX_DESUGAR_PASSES must be positive")
        if self.observability.log_format not in ("json", "text"):
            raise ValueError("LOG_FORMAT must be one of: json, text")

        if self.storage.backend == StorageBackend.SQLITE:
            if not self.storage.database_file:
                raise ValueError("SQLITE_DATABASE_FILE is required when STORAGE_BACKEND=sqlite")
            if not os.path.exists(self.storage.data_dir):
                logger.warning(
                    f"Data directory does not exist: {self.storage.data_dir}. "
                    "It will be created on first write."
                )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Configuration loaded",
            extra={
                "storage_backend": self.storage.backend.value,
                "data_dir": self.storage.data_dir
                if self.storage.backend == StorageBackend.SQLITE
                else None,
                "allow_client_class_creation": self.query.allow_client_class_creation,
                "max_where_depth": self.query.max_where_depth,
                "log_level": self.observability.log_level,
            },
        )
