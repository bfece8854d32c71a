"""
Storage collaborators for Docbase.

This module provides the document store interface consumed by the schema
and query layers, with two adapters:
- SQLite (single-file persistence)
- In-memory (for testing)

Invariants:
    - The schema and query layers only use the DocumentStore protocol
    - Both adapters evaluate where clauses with the same matcher
    - upsert_schema_row is atomic with respect to its guard query

How to change safely:
    - New adapters must implement the DocumentStore protocol
    - Run the adapter against tests/integration/test_sqlite_store.py
"""

from .base import (
    DocumentStore,
    DuplicateKeyError,
    SchemaCollection,
    StorageConnectionError,
    StorageError,
    UnsupportedQueryError,
    create_document_store,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    # Protocols and errors
    "DocumentStore",
    "SchemaCollection",
    "StorageError",
    "StorageConnectionError",
    "DuplicateKeyError",
    "UnsupportedQueryError",
    # Factory
    "create_document_store",
    # Implementations
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
]
