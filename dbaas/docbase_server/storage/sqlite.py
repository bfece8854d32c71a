"""
SQLite document store for Docbase.

This module persists the schema collection and every document collection
in one SQLite file:
- schema_rows: one JSON row per class
- collections: registry of created collections (join tables included)
- documents: JSON documents in storage form, keyed by class and objectId

Where clauses are evaluated by the shared matcher after loading a
collection's rows, so behaviour matches InMemoryDocumentStore exactly.

Invariants:
    - All writes run in a single BEGIN IMMEDIATE transaction
    - upsert_schema_row reads and writes the row in the same transaction,
      so a concurrent committer either sees the row or loses the guard
    - doc_json holds the storage form (see transform.py)

How to change safely:
    - Schema migrations must be backward compatible
    - Bump SCHEMA_VERSION when changing tables

Table schema:
    schema_rows:
        - class_name TEXT PRIMARY KEY
        - row_json TEXT

    collections:
        - name TEXT PRIMARY KEY
        - created_at INTEGER (Unix ms)

    documents:
        - class_name TEXT
        - object_id TEXT
        - doc_json TEXT
        - created_at INTEGER (Unix ms)
        - PRIMARY KEY (class_name, object_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from . import matcher
from .base import DuplicateKeyError, StorageConnectionError
from .transform import apply_update, from_storage_document, to_storage_document, to_storage_where
from .util import new_object_id, utc_timestamp

logger = logging.getLogger(__name__)


class SqliteDocumentStore:
    """Single-file SQLite implementation of DocumentStore.

    Thread safety:
        Each database connection is created per-operation.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/docbase")
        >>> await store.initialize()
        >>> await store.insert_one("Team", {"name": "red"})
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        database_file: str = "docbase.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the document store.

        Args:
            data_dir: Directory holding the database file
            database_file: Database file name
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.database_file = database_file
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.database_file

    @contextmanager
    def _get_connection(self, create: bool = False) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Raises:
            StorageConnectionError: If the database doesn't exist and create=False
        """
        if not create and not self.db_path.exists():
            raise StorageConnectionError(f"Database not found: {self.db_path}")

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS schema_rows (
                class_name TEXT PRIMARY KEY,
                row_json TEXT NOT NULL DEFAULT '{}'
            );

            CREATE TABLE IF NOT EXISTS collections (
                name TEXT PRIMARY KEY,
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS documents (
                class_name TEXT NOT NULL,
                object_id TEXT NOT NULL,
                doc_json TEXT NOT NULL DEFAULT '{}',
                created_at INTEGER NOT NULL,
                PRIMARY KEY (class_name, object_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_created
                ON documents(class_name, created_at);

            INSERT OR IGNORE INTO schema_version (version, applied_at)
            VALUES (1, strftime('%s', 'now') * 1000);
        """)

    async def initialize(self) -> None:
        """Create the database file and tables if they don't exist."""
        async with self._lock:
            with self._get_connection(create=True) as conn:
                self._create_schema(conn)
        logger.info(f"Initialized document store: {self.db_path}")

    async def close(self) -> None:
        """Nothing to release; connections are per-operation."""
        logger.debug("SqliteDocumentStore closed")

    # Schema collection

    @staticmethod
    def _read_schema_row(conn: sqlite3.Connection, class_name: str) -> dict[str, Any] | None:
        row = conn.execute(
            "SELECT row_json FROM schema_rows WHERE class_name = ?",
            (class_name,),
        ).fetchone()
        return json.loads(row["row_json"]) if row else None

    @staticmethod
    def _write_schema_row(conn: sqlite3.Connection, class_name: str, row: dict[str, Any]) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO schema_rows (class_name, row_json) VALUES (?, ?)",
            (class_name, json.dumps(row)),
        )

    async def get_all_schemas(self) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT row_json FROM schema_rows ORDER BY class_name").fetchall()
        return [json.loads(row["row_json"]) for row in rows]

    async def add_schema_row(self, class_name: str, fields: dict[str, Any]) -> None:
        row = dict(fields)
        row["_id"] = class_name
        with self._get_connection() as conn:
            try:
                conn.execute(
                    "INSERT INTO schema_rows (class_name, row_json) VALUES (?, ?)",
                    (class_name, json.dumps(row)),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateKeyError(f"Schema row already exists: {class_name}") from e

    async def update_schema_row(self, class_name: str, update: dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._read_schema_row(conn, class_name)
                if row is not None and apply_update(row, update):
                    self._write_schema_row(conn, class_name, row)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    async def upsert_schema_row(
        self,
        class_name: str,
        query: dict[str, Any],
        update: dict[str, Any],
    ) -> bool:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._read_schema_row(conn, class_name)
                if row is None:
                    row = {"_id": class_name}
                elif not matcher.matches(row, query):
                    conn.execute("COMMIT")
                    return False
                apply_update(row, update)
                self._write_schema_row(conn, class_name, row)
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return True

    # Documents

    @staticmethod
    def _load_collection(conn: sqlite3.Connection, class_name: str) -> list[dict[str, Any]]:
        rows = conn.execute(
            "SELECT doc_json FROM documents WHERE class_name = ? ORDER BY created_at, rowid",
            (class_name,),
        ).fetchall()
        return [json.loads(row["doc_json"]) for row in rows]

    async def find(
        self,
        class_name: str,
        where: dict[str, Any],
        options: dict[str, Any] | None = None,
    ) -> list[Any]:
        with self._get_connection() as conn:
            documents = self._load_collection(conn, class_name)
        found = matcher.select(documents, to_storage_where(where or {}), options)
        if options and options.get("count"):
            return found
        return [from_storage_document(doc) for doc in found]

    async def insert_one(self, class_name: str, document: dict[str, Any]) -> dict[str, Any]:
        stored = to_storage_document(document)
        stored.setdefault("objectId", new_object_id())
        stored.setdefault("createdAt", utc_timestamp())
        stored.setdefault("updatedAt", stored["createdAt"])
        now = int(time.time() * 1000)

        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "INSERT OR IGNORE INTO collections (name, created_at) VALUES (?, ?)",
                    (class_name, now),
                )
                conn.execute(
                    """
                    INSERT INTO documents (class_name, object_id, doc_json, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (class_name, stored["objectId"], json.dumps(stored), now),
                )
                conn.execute("COMMIT")
            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                raise DuplicateKeyError(
                    f"Duplicate objectId in {class_name}: {stored['objectId']}"
                ) from e
            except Exception:
                conn.execute("ROLLBACK")
                raise

        logger.debug(
            "Inserted document",
            extra={"class_name": class_name, "object_id": stored["objectId"]},
        )
        return from_storage_document(stored)

    async def update_many(
        self,
        class_name: str,
        where: dict[str, Any],
        update: dict[str, Any],
    ) -> int:
        storage_where = to_storage_where(where or {})
        modified = 0
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for doc in self._load_collection(conn, class_name):
                    if matcher.matches(doc, storage_where) and apply_update(doc, update):
                        conn.execute(
                            """
                            UPDATE documents SET doc_json = ?
                            WHERE class_name = ? AND object_id = ?
                            """,
                            (json.dumps(doc), class_name, doc["objectId"]),
                        )
                        modified += 1
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        return modified

    async def drop_collection(self, name: str) -> None:
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM documents WHERE class_name = ?", (name,))
                conn.execute("DELETE FROM collections WHERE name = ?", (name,))
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        logger.info(f"Dropped collection: {name}")

    async def collection_exists(self, name: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT 1 FROM collections WHERE name = ?", (name,))
            return cursor.fetchone() is not None

    async def create_collection(self, name: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO collections (name, created_at) VALUES (?, ?)",
                (name, int(time.time() * 1000)),
            )
