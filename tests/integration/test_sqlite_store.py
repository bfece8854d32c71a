"""
Integration tests for SqliteDocumentStore.

Tests cover:
- Database creation and persistence across instances
- Schema rows and the guarded upsert
- Documents in storage form, find options and updates
- SchemaStore and query pipeline on top of SQLite
"""

import tempfile

import pytest

from dbaas.docbase_server.auth import Auth
from dbaas.docbase_server.config import ServerConfig, StorageConfig
from dbaas.docbase_server.errors import IncorrectTypeError
from dbaas.docbase_server.main import Backend
from dbaas.docbase_server.schema import SchemaStore
from dbaas.docbase_server.schema.types import NUMBER
from dbaas.docbase_server.storage import (
    DocumentStore,
    DuplicateKeyError,
    SqliteDocumentStore,
    StorageConnectionError,
)


class TestSqliteDocumentStore:
    """Tests for SqliteDocumentStore."""

    @pytest.fixture
    def data_dir(self):
        """Create a temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create an initialized store."""
        s = SqliteDocumentStore(data_dir)
        await s.initialize()
        yield s
        await s.close()

    def test_satisfies_protocol(self, data_dir):
        """The adapter implements DocumentStore."""
        assert isinstance(SqliteDocumentStore(data_dir), DocumentStore)

    @pytest.mark.asyncio
    async def test_initialize_creates_database(self, data_dir):
        """initialize() creates the database file."""
        store = SqliteDocumentStore(data_dir, database_file="test.db")
        await store.initialize()

        assert store.db_path.exists()

    @pytest.mark.asyncio
    async def test_missing_database(self, data_dir):
        """Reads before initialize fail."""
        store = SqliteDocumentStore(data_dir)
        with pytest.raises(StorageConnectionError):
            await store.get_all_schemas()

    @pytest.mark.asyncio
    async def test_schema_rows_persist(self, store, data_dir):
        """Schema rows survive a new store instance."""
        await store.add_schema_row("Book", {"title": "string"})

        reopened = SqliteDocumentStore(data_dir)
        await reopened.initialize()

        assert await reopened.get_all_schemas() == [{"title": "string", "_id": "Book"}]

    @pytest.mark.asyncio
    async def test_duplicate_schema_row(self, store):
        """A second row for a class fails."""
        await store.add_schema_row("Book", {})
        with pytest.raises(DuplicateKeyError):
            await store.add_schema_row("Book", {})

    @pytest.mark.asyncio
    async def test_update_schema_row(self, store):
        """$set and $unset apply to the stored row."""
        await store.add_schema_row("Book", {"title": "string"})
        await store.update_schema_row(
            "Book", {"$set": {"pages": "number"}, "$unset": {"title": ""}}
        )

        assert await store.get_all_schemas() == [{"_id": "Book", "pages": "number"}]

    @pytest.mark.asyncio
    async def test_upsert_guard(self, store):
        """The guarded upsert inserts, then refuses to overwrite."""
        guard = {"pages": {"$exists": False}}

        assert await store.upsert_schema_row("Book", guard, {"$set": {"pages": "number"}})
        assert not await store.upsert_schema_row("Book", guard, {"$set": {"pages": "string"}})
        assert await store.get_all_schemas() == [{"_id": "Book", "pages": "number"}]

    @pytest.mark.asyncio
    async def test_insert_and_find(self, store):
        """Documents round-trip through storage form."""
        pointer = {"__type": "Pointer", "className": "_User", "objectId": "u1"}
        inserted = await store.insert_one("Book", {"title": "Dune", "author": pointer})

        found = await store.find("Book", {"author": pointer})

        assert found == [inserted]
        assert found[0]["author"] == pointer

    @pytest.mark.asyncio
    async def test_duplicate_object_id(self, store):
        """objectId is unique per class."""
        await store.insert_one("Book", {"objectId": "b1"})
        await store.insert_one("Film", {"objectId": "b1"})
        with pytest.raises(DuplicateKeyError):
            await store.insert_one("Book", {"objectId": "b1"})

    @pytest.mark.asyncio
    async def test_find_options(self, store):
        """sort, skip, limit, count and acl behave like the memory store."""
        for pages in (100, 300, 200):
            await store.insert_one("Book", {"pages": pages})
        await store.insert_one("Book", {"pages": 400, "ACL": {"u1": {"read": True}}})

        page = await store.find("Book", {}, {"sort": ["-pages"], "skip": 1, "limit": 2})
        counted = await store.find("Book", {"pages": {"$gte": 200}}, {"count": True})
        public = await store.find("Book", {}, {"acl": None})

        assert [d["pages"] for d in page] == [300, 200]
        assert counted == [3]
        assert sorted(d["pages"] for d in public) == [100, 200, 300]

    @pytest.mark.asyncio
    async def test_update_many(self, store):
        """update_many rewrites matching documents."""
        await store.insert_one("Book", {"title": "a", "tmp": 1})
        await store.insert_one("Book", {"title": "b", "tmp": 2})

        modified = await store.update_many("Book", {"tmp": 1}, {"$unset": {"tmp": ""}})

        assert modified == 1
        docs = {d["title"]: d for d in await store.find("Book", {})}
        assert "tmp" not in docs["a"]
        assert docs["b"]["tmp"] == 2

    @pytest.mark.asyncio
    async def test_collections(self, store):
        """Collections are registered on insert and removed on drop."""
        await store.insert_one("Book", {"title": "a"})
        await store.create_collection("_Join:readers:Book")

        assert await store.collection_exists("Book")
        assert await store.collection_exists("_Join:readers:Book")

        await store.drop_collection("Book")

        assert not await store.collection_exists("Book")
        assert await store.find("Book", {}) == []


class TestSchemaOnSqlite:
    """SchemaStore and the query pipeline backed by SQLite."""

    @pytest.fixture
    def data_dir(self):
        """Create a temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.mark.asyncio
    async def test_schema_survives_restart(self, data_dir):
        """Committed field types are reloaded by a new SchemaStore."""
        store = SqliteDocumentStore(data_dir)
        await store.initialize()
        schema = await SchemaStore.load(store)
        await schema.validate_object("Book", {"title": "Dune", "pages": 412})

        reopened = SqliteDocumentStore(data_dir)
        await reopened.initialize()
        schema2 = await SchemaStore.load(reopened)

        assert schema2.get_expected_type("Book", "pages") == NUMBER
        with pytest.raises(IncorrectTypeError):
            await schema2.validate_object("Book", {"pages": "many"})

    @pytest.mark.asyncio
    async def test_relation_delete_drops_join(self, data_dir):
        """Deleting a relation field drops its join collection."""
        store = SqliteDocumentStore(data_dir)
        await store.initialize()
        schema = await SchemaStore.load(store)
        await schema.add_class_if_not_exists(
            "Book", {"readers": {"type": "Relation", "targetClass": "_User"}}
        )
        await store.create_collection("_Join:readers:Book")

        await schema.delete_field("readers", "Book")

        assert not await store.collection_exists("_Join:readers:Book")
        assert "readers" not in schema.get_one_schema("Book")["fields"]

    @pytest.mark.asyncio
    async def test_backend_end_to_end(self, data_dir):
        """Create and query through a SQLite-backed Backend."""
        config = ServerConfig(storage=StorageConfig(data_dir=data_dir))

        async with Backend(config) as backend:
            await backend.create("Team", {"name": "red", "minAge": 18})
            await backend.create("Team", {"name": "blue", "minAge": 21})
            await backend.create("Player", {"name": "ann", "age": 18})
            await backend.create("Player", {"name": "cat", "age": 30})

        async with Backend(config) as backend:
            where = {
                "age": {"$select": {"query": {"className": "Team", "where": {}}, "key": "minAge"}}
            }
            response = await backend.find(Auth.nobody(), "Player", where, {"count": True})

        assert [row["name"] for row in response["results"]] == ["ann"]
        assert response["count"] == 1
