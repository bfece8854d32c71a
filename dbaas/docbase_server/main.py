"""
Docbase - component wiring.

This module assembles the data-access core from configuration:
- Document store (SQLite or in-memory)
- SchemaStore loaded from the store's schema collection
- Query execution bound to both

Transport is out of scope; callers (the CLI, an HTTP layer, tests) hold a
Backend and call it directly.

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The schema cache is loaded before the first query
    - All components share one SchemaStore and one SchemaDefaults

How to change safely:
    - Keep start()/stop() idempotent
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import json_log_formatter

from .auth import Auth
from .config import ServerConfig
from .query import RestQuery
from .schema import DEFAULT_SCHEMA_DEFAULTS, SchemaDefaults, SchemaStore
from .storage import DocumentStore, create_document_store

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Backend:
    """Docbase orchestrator.

    Attributes:
        config: Server configuration
        storage: Document store instance
        schema: Schema registry (available after start())

    Example:
        >>> backend = Backend(ServerConfig())
        >>> await backend.start()
        >>> await backend.find(Auth.master(), "Book", {"pages": {"$gt": 300}})
        >>> await backend.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        storage: DocumentStore | None = None,
        defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
    ) -> None:
        """Initialize the backend.

        Args:
            config: Optional configuration (loaded from env if not provided)
            storage: Optional document store (built from config if not provided)
            defaults: Schema default tables
        """
        self.config = config or ServerConfig.from_env()
        self.storage: DocumentStore = storage or create_document_store(self.config.storage)
        self.defaults = defaults
        self.schema: SchemaStore | None = None
        self._running = False

    async def start(self) -> None:
        """Initialize storage and load the schema cache."""
        if self._running:
            logger.warning("Backend already running")
            return

        logger.info("Starting Docbase")
        self.config.log_config()
        await self.storage.initialize()
        self.schema = await SchemaStore.load(self.storage, self.defaults)
        self._running = True
        logger.info(
            "Docbase started",
            extra={"classes": len(self.schema.class_names), "fingerprint": self.schema.fingerprint},
        )

    async def stop(self) -> None:
        if not self._running:
            return
        await self.storage.close()
        self._running = False
        logger.info("Docbase stopped")

    async def __aenter__(self) -> Backend:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    def _require_schema(self) -> SchemaStore:
        if self.schema is None:
            raise RuntimeError("Backend not started")
        return self.schema

    def query(
        self,
        auth: Auth,
        class_name: str,
        where: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> RestQuery:
        """Build a query bound to this backend."""
        return RestQuery(
            self._require_schema(),
            self.storage,
            auth,
            class_name,
            where,
            options,
            self.config.query,
        )

    async def find(
        self,
        auth: Auth,
        class_name: str,
        where: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Run a query and return its response envelope."""
        return await self.query(auth, class_name, where, options).execute()

    async def create(self, class_name: str, obj: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate an object against the schema, then insert it."""
        schema = self._require_schema()
        await schema.validate_object(class_name, obj)
        return await self.storage.insert_one(class_name, dict(obj))
