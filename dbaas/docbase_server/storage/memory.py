"""
In-memory document store for testing.

This module provides a DocumentStore that keeps schema rows and documents
in process memory, for:
- Unit tests
- Integration tests of the schema and query layers
- Local development without a database file

Invariants:
    - All data is lost on process exit
    - Documents are stored in storage form (see transform.py) and returned
      as deep copies in API form
    - Mutations are serialized by a single asyncio lock

How to change safely:
    - Keep behaviour identical to SqliteDocumentStore; both run the same
      matcher over the same storage form
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional

from . import matcher
from .base import DuplicateKeyError, StorageConnectionError
from .transform import apply_update, from_storage_document, to_storage_document, to_storage_where
from .util import new_object_id, utc_timestamp

logger = logging.getLogger(__name__)


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore.

    Thread safety:
        Uses an asyncio lock around mutations. Safe to use from multiple
        coroutines on one event loop.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.initialize()
        >>> await store.insert_one("Team", {"name": "red"})
        >>> await store.find("Team", {"name": "red"})
    """

    def __init__(self) -> None:
        self._schemas: Dict[str, Dict[str, Any]] = {}
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize (no-op for in-memory)."""
        self._initialized = True
        logger.debug("InMemoryDocumentStore initialized")

    async def close(self) -> None:
        """Close and clear all data."""
        self._initialized = False
        self._schemas.clear()
        self._collections.clear()
        logger.debug("InMemoryDocumentStore closed")

    def _check(self) -> None:
        if not self._initialized:
            raise StorageConnectionError("Document store not initialized")

    # Schema collection

    async def get_all_schemas(self) -> List[Dict[str, Any]]:
        self._check()
        return [copy.deepcopy(row) for row in self._schemas.values()]

    async def add_schema_row(self, class_name: str, fields: Dict[str, Any]) -> None:
        self._check()
        async with self._lock:
            if class_name in self._schemas:
                raise DuplicateKeyError(f"Schema row already exists: {class_name}")
            row = copy.deepcopy(fields)
            row["_id"] = class_name
            self._schemas[class_name] = row

    async def update_schema_row(self, class_name: str, update: Dict[str, Any]) -> None:
        self._check()
        async with self._lock:
            row = self._schemas.get(class_name)
            if row is None:
                logger.debug(f"No schema row to update: {class_name}")
                return
            apply_update(row, update)

    async def upsert_schema_row(
        self,
        class_name: str,
        query: Dict[str, Any],
        update: Dict[str, Any],
    ) -> bool:
        self._check()
        async with self._lock:
            row = self._schemas.get(class_name)
            if row is None:
                row = {"_id": class_name}
                apply_update(row, update)
                self._schemas[class_name] = row
                return True
            if not matcher.matches(row, query):
                return False
            apply_update(row, update)
            return True

    # Documents

    async def find(
        self,
        class_name: str,
        where: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        self._check()
        documents = self._collections.get(class_name, [])
        found = matcher.select(documents, to_storage_where(where or {}), options)
        if options and options.get("count"):
            return found
        return [from_storage_document(doc) for doc in found]

    async def insert_one(self, class_name: str, document: Dict[str, Any]) -> Dict[str, Any]:
        self._check()
        stored = to_storage_document(document)
        now = utc_timestamp()
        stored.setdefault("objectId", new_object_id())
        stored.setdefault("createdAt", now)
        stored.setdefault("updatedAt", stored["createdAt"])
        async with self._lock:
            collection = self._collections.setdefault(class_name, [])
            if any(doc.get("objectId") == stored["objectId"] for doc in collection):
                raise DuplicateKeyError(f"Duplicate objectId in {class_name}: {stored['objectId']}")
            collection.append(stored)
        return from_storage_document(stored)

    async def update_many(
        self,
        class_name: str,
        where: Dict[str, Any],
        update: Dict[str, Any],
    ) -> int:
        self._check()
        storage_where = to_storage_where(where or {})
        modified = 0
        async with self._lock:
            for doc in self._collections.get(class_name, []):
                if matcher.matches(doc, storage_where) and apply_update(doc, update):
                    modified += 1
        return modified

    async def drop_collection(self, name: str) -> None:
        self._check()
        async with self._lock:
            if self._collections.pop(name, None) is not None:
                logger.info(f"Dropped collection: {name}")

    async def collection_exists(self, name: str) -> bool:
        self._check()
        return name in self._collections

    async def create_collection(self, name: str) -> None:
        """Register an empty collection (join tables, tests)."""
        self._check()
        async with self._lock:
            self._collections.setdefault(name, [])
