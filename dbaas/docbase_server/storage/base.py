"""
Storage collaborator protocols for Docbase.

The schema and query layers never talk to a database directly. They use two
narrow async interfaces:

- SchemaCollection: the persisted schema collection, one row per class
  ({"_id": className, "_metadata": {...}, <field>: <storage token>, ...})
- DocumentStore: the generic document primitives (find, insert, update,
  drop) plus the schema collection

Adapters:
    - memory.InMemoryDocumentStore (tests, local development)
    - sqlite.SqliteDocumentStore (single-file persistence)

Invariants:
    - upsert_schema_row never overwrites a row that does not match the
      guard query; it reports whether a write happened
    - add_schema_row raises DuplicateKeyError when the row exists
    - find(..., {"count": True}) returns a one-element list [n]
    - Documents cross this boundary in API form; pointer and ACL encoding
      is the adapter's business (see transform.py)

How to change safely:
    - Protocol changes require updating every adapter
    - Keep find options backward compatible (acl, sort, skip, limit, count)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import StorageConfig

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""

    pass


class StorageConnectionError(StorageError):
    """Storage backend is unavailable."""

    pass


class DuplicateKeyError(StorageError):
    """A row with the same key already exists."""

    pass


class UnsupportedQueryError(StorageError):
    """The where clause uses an operator the adapter cannot evaluate."""

    pass


@runtime_checkable
class SchemaCollection(Protocol):
    """Persisted schema collection."""

    async def get_all_schemas(self) -> List[Dict[str, Any]]:
        """Return every schema row."""
        ...

    async def add_schema_row(self, class_name: str, fields: Dict[str, Any]) -> None:
        """Insert a new schema row.

        Raises:
            DuplicateKeyError: If a row for the class exists
        """
        ...

    async def update_schema_row(self, class_name: str, update: Dict[str, Any]) -> None:
        """Apply a $set/$unset update to an existing row."""
        ...

    async def upsert_schema_row(
        self,
        class_name: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
    ) -> bool:
        """Update the row if it matches `query`, insert it if absent.

        Returns:
            True if a row was written, False if an existing row did not match
        """
        ...


@runtime_checkable
class DocumentStore(SchemaCollection, Protocol):
    """Generic document primitives plus the schema collection."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, connect)."""
        ...

    async def close(self) -> None:
        """Release backend resources."""
        ...

    async def find(
        self,
        class_name: str,
        where: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        """Find documents, or count them when options["count"] is set."""
        ...

    async def insert_one(self, class_name: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document, assigning objectId/createdAt/updatedAt if absent."""
        ...

    async def update_many(
        self,
        class_name: str,
        where: Dict[str, Any],
        update: Dict[str, Any],
    ) -> int:
        """Apply a $set/$unset update to every matching storage document.

        Keys in `update` are storage column names (e.g. "_p_owner").

        Returns:
            Number of documents modified
        """
        ...

    async def drop_collection(self, name: str) -> None:
        """Drop a collection and all its documents (missing is not an error)."""
        ...

    async def collection_exists(self, name: str) -> bool:
        """Whether a collection has been created."""
        ...

    async def create_collection(self, name: str) -> None:
        """Create an empty collection (no-op if it exists)."""
        ...


def create_document_store(config: StorageConfig) -> DocumentStore:
    """Create the adapter selected by configuration.

    Args:
        config: Storage configuration

    Returns:
        An uninitialized DocumentStore

    Raises:
        ValueError: If the backend is unknown
    """
    from ..config import StorageBackend
    from .memory import InMemoryDocumentStore
    from .sqlite import SqliteDocumentStore

    if config.backend == StorageBackend.MEMORY:
        logger.info("Using in-memory document store")
        return InMemoryDocumentStore()
    if config.backend == StorageBackend.SQLITE:
        logger.info(f"Using SQLite document store in {config.data_dir}")
        return SqliteDocumentStore(
            data_dir=config.data_dir,
            database_file=config.database_file,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
        )
    raise ValueError(f"Unknown storage backend: {config.backend}")
