"""
Integration tests for the query pipeline.

These tests run RestQuery end to end against a Backend on the in-memory
document store: objects are created through schema validation, then
queried through option parsing, ACL and session scoping, operator
desugaring, find, count and include expansion.
"""

import copy

import pytest

from dbaas.docbase_server.auth import Auth
from dbaas.docbase_server.config import QueryConfig, ServerConfig, StorageBackend, StorageConfig
from dbaas.docbase_server.errors import (
    InvalidJSONError,
    InvalidQueryError,
    InvalidSessionTokenError,
    OperationForbiddenError,
    PermissionDeniedError,
)
from dbaas.docbase_server.main import Backend
from dbaas.docbase_server.query import RestQuery
from dbaas.docbase_server.query.where import count_query_operators
from dbaas.docbase_server.storage import InMemoryDocumentStore


def _pointer(class_name, object_id):
    return {"__type": "Pointer", "className": class_name, "objectId": object_id}


def _select(class_name, key, where=None):
    return {"query": {"className": class_name, "where": where or {}}, "key": key}


def _config(**query_overrides):
    return ServerConfig(
        query=QueryConfig(**query_overrides),
        storage=StorageConfig(backend=StorageBackend.MEMORY),
    )


async def _seed(backend):
    for object_id, name, city, min_age in (
        ("tred", "red", "Oslo", 18),
        ("tblue", "blue", "Oslo", 21),
        ("tgreen", "green", "Rome", 16),
    ):
        await backend.create(
            "Team", {"objectId": object_id, "name": name, "city": city, "minAge": min_age}
        )

    for name, team, age in (("ann", "red", 18), ("bob", "green", 21), ("cat", "blue", 30)):
        await backend.create("Player", {"name": name, "team": team, "age": age})

    for object_id, username, team in (("uann", "ann", "tred"), ("ubob", "bob", "tgreen")):
        await backend.create(
            "_User",
            {
                "objectId": object_id,
                "username": username,
                "password": "hashed",
                "sessionToken": f"r:{username}",
                "team": _pointer("Team", team),
            },
        )

    posts = (("p1", "Hello", "uann"), ("p2", "Again", "ubob"), ("p3", "Bye", "uann"))
    for object_id, title, author in posts:
        await backend.create(
            "Post", {"objectId": object_id, "title": title, "author": _pointer("_User", author)}
        )


@pytest.fixture
async def backend():
    async with Backend(_config(), storage=InMemoryDocumentStore()) as b:
        await _seed(b)
        yield b


def _values(response, key):
    return [row.get(key) for row in response["results"]]


class TestDesugaring:
    """Tests for $select / $dontSelect / $inQuery / $notInQuery."""

    @pytest.mark.asyncio
    async def test_select_end_to_end(self, backend):
        """$select becomes $in over the nested query's key values."""
        where = {"age": {"$select": _select("Team", "minAge")}}
        query = backend.query(Auth.master(), "Player", where)

        response = await query.execute()

        assert query.where == {"age": {"$in": [18, 21, 16]}}
        assert _values(response, "name") == ["ann", "bob"]

    @pytest.mark.asyncio
    async def test_select_honours_nested_where(self, backend):
        """The nested query's where restricts the selected values."""
        where = {"team": {"$select": _select("Team", "name", {"city": "Oslo"})}}
        response = await backend.find(Auth.master(), "Player", where)

        assert _values(response, "name") == ["ann", "cat"]

    @pytest.mark.asyncio
    async def test_dont_select(self, backend):
        """$dontSelect becomes $nin."""
        where = {"team": {"$dontSelect": _select("Team", "name", {"city": "Oslo"})}}
        response = await backend.find(Auth.master(), "Player", where)

        assert _values(response, "name") == ["bob"]

    @pytest.mark.asyncio
    async def test_in_query(self, backend):
        """$inQuery matches pointers to the nested query's rows."""
        where = {"author": {"$inQuery": {"where": {"username": "ann"}, "className": "_User"}}}
        query = backend.query(Auth.master(), "Post", where)

        response = await query.execute()

        assert query.where == {"author": {"$in": [_pointer("_User", "uann")]}}
        assert _values(response, "objectId") == ["p1", "p3"]

    @pytest.mark.asyncio
    async def test_not_in_query(self, backend):
        """$notInQuery excludes pointers to the nested query's rows."""
        where = {"author": {"$notInQuery": {"where": {"username": "ann"}, "className": "_User"}}}
        response = await backend.find(Auth.master(), "Post", where)

        assert _values(response, "objectId") == ["p2"]

    @pytest.mark.asyncio
    async def test_nested_operators(self, backend):
        """Operators inside nested queries are resolved recursively."""
        where = {
            "author": {
                "$inQuery": {
                    "className": "_User",
                    "where": {
                        "username": {
                            "$select": _select("Player", "name", {"age": {"$gt": 20}})
                        }
                    },
                }
            }
        }
        query = backend.query(Auth.master(), "Post", where)

        response = await query.execute()

        assert count_query_operators(query.where, 64) == 0
        assert _values(response, "objectId") == ["p2"]

    @pytest.mark.asyncio
    async def test_multiple_operators(self, backend):
        """Every operator occurrence is rewritten."""
        where = {
            "$or": [
                {"team": {"$select": _select("Team", "name", {"city": "Rome"})}},
                {"age": {"$select": _select("Team", "minAge", {"name": "blue"})}},
            ]
        }
        query = backend.query(Auth.master(), "Player", where)

        response = await query.execute()

        assert count_query_operators(query.where, 64) == 0
        assert _values(response, "name") == ["bob"]

    @pytest.mark.asyncio
    async def test_selected_values_are_literals(self, backend):
        """Stored values shaped like operators are compared, never run."""
        in_query_tag = {"$inQuery": {"where": {}, "className": "Team"}}
        select_tag = {"$select": _select("Badge", "tag")}
        for object_id, tag in (("b1", in_query_tag), ("b2", select_tag), ("b3", select_tag)):
            await backend.create("Badge", {"objectId": object_id, "tag": tag})
        await backend.create("Thing", {"objectId": "x1", "tag": in_query_tag})
        await backend.create("Thing", {"objectId": "x2", "tag": select_tag})
        await backend.create("Thing", {"objectId": "x3", "tag": {"plain": True}})

        where = {"tag": {"$select": _select("Badge", "tag")}}
        query = backend.query(Auth.master(), "Thing", where)

        response = await query.execute()

        assert query.where == {"tag": {"$in": [in_query_tag, select_tag, select_tag]}}
        assert _values(response, "objectId") == ["x1", "x2"]

    @pytest.mark.asyncio
    async def test_merge_with_existing_in(self, backend):
        """Resolved values are appended to an existing $in."""
        where = {
            "author": {
                "$in": [_pointer("_User", "ubob")],
                "$inQuery": {"where": {"username": "ann"}, "className": "_User"},
            }
        }
        query = backend.query(Auth.master(), "Post", where)

        response = await query.execute()

        merged = query.where["author"]["$in"]
        assert merged == [_pointer("_User", "ubob"), _pointer("_User", "uann")]
        assert _values(response, "objectId") == ["p1", "p2", "p3"]

    @pytest.mark.asyncio
    async def test_caller_where_not_mutated(self, backend):
        """The caller's where tree is left untouched."""
        where = {"author": {"$inQuery": {"where": {"username": "ann"}, "className": "_User"}}}
        original = copy.deepcopy(where)

        await backend.find(Auth.master(), "Post", where)

        assert where == original

    @pytest.mark.asyncio
    async def test_improper_select(self, backend):
        """A $select without key is rejected."""
        where = {"age": {"$select": {"query": {"className": "Team"}}}}
        with pytest.raises(InvalidQueryError):
            await backend.find(Auth.master(), "Player", where)

    @pytest.mark.asyncio
    async def test_improper_in_query(self, backend):
        """An $inQuery with extra keys is rejected."""
        where = {"author": {"$inQuery": {"where": {}, "className": "_User", "limit": 1}}}
        with pytest.raises(InvalidQueryError):
            await backend.find(Auth.master(), "Post", where)

    @pytest.mark.asyncio
    async def test_pass_limit(self, backend):
        """More operators than max_desugar_passes fails."""
        select = {"$select": _select("Team", "name")}
        where = {"$or": [{"team": copy.deepcopy(select)}, {"name": copy.deepcopy(select)}]}
        query = RestQuery(
            backend.schema,
            backend.storage,
            Auth.master(),
            "Player",
            where,
            config=QueryConfig(max_desugar_passes=1),
        )

        with pytest.raises(InvalidQueryError):
            await query.execute()

    @pytest.mark.asyncio
    async def test_depth_limit(self, backend):
        """A where tree nested past max_where_depth fails."""
        where = {"name": "ann"}
        for _ in range(40):
            where = {"$and": [where]}

        with pytest.raises(InvalidQueryError):
            await backend.find(Auth.master(), "Player", where)


class TestFindOptions:
    """Tests for keys, order, pagination and count."""

    @pytest.mark.asyncio
    async def test_keys_projection(self, backend):
        """Projection keeps the requested keys plus the universal ones."""
        response = await backend.find(Auth.master(), "Player", {}, {"keys": "name"})

        for row in response["results"]:
            assert set(row) == {"name", "objectId", "createdAt", "updatedAt"}

    @pytest.mark.asyncio
    async def test_order(self, backend):
        """order sorts rows, "-" descending."""
        response = await backend.find(Auth.master(), "Player", {}, {"order": "-age"})

        assert _values(response, "name") == ["cat", "bob", "ann"]

    @pytest.mark.asyncio
    async def test_count_ignores_pagination(self, backend):
        """count reports the total while results stay paginated."""
        options = {"count": True, "limit": 1, "skip": 1, "order": "-age"}
        response = await backend.find(Auth.master(), "Player", {}, options)

        assert response["count"] == 3
        assert _values(response, "name") == ["bob"]

    @pytest.mark.asyncio
    async def test_unknown_option(self, backend):
        """Unknown options fail."""
        with pytest.raises(InvalidJSONError):
            await backend.find(Auth.master(), "Player", {}, {"explain": True})

    @pytest.mark.asyncio
    async def test_where_must_be_object(self, backend):
        """A non-object where fails."""
        with pytest.raises(InvalidJSONError):
            await backend.find(Auth.master(), "Player", ["name"])

    @pytest.mark.asyncio
    async def test_redirect(self, backend):
        """redirectClassNameForKey queries the relation's target class."""
        await backend.schema.add_class_if_not_exists(
            "Club", {"members": {"type": "Relation", "targetClass": "_User"}}
        )

        response = await backend.find(
            Auth.master(), "Club", {}, {"redirectClassNameForKey": "members"}
        )

        assert response["className"] == "_User"
        assert _values(response, "username") == ["ann", "bob"]


class TestUserRows:
    """Tests for _User result sanitizing."""

    @pytest.mark.asyncio
    async def test_password_stripped(self, backend):
        """_User rows never carry password."""
        response = await backend.find(Auth.master(), "_User", {})

        assert len(response["results"]) == 2
        assert all("password" not in row for row in response["results"])

    @pytest.mark.asyncio
    async def test_password_stripped_with_keys(self, backend):
        """Requesting password explicitly still strips it."""
        response = await backend.find(Auth.master(), "_User", {}, {"keys": "username,password"})

        for row in response["results"]:
            assert "password" not in row
            assert "username" in row


class TestInclude:
    """Tests for include expansion."""

    @pytest.mark.asyncio
    async def test_include_pointer(self, backend):
        """An included pointer is replaced by the object."""
        response = await backend.find(
            Auth.master(), "Post", {"objectId": "p1"}, {"include": "author"}
        )

        author = response["results"][0]["author"]
        assert author["__type"] == "Object"
        assert author["className"] == "_User"
        assert author["username"] == "ann"
        assert "password" not in author
        assert "sessionToken" not in author

    @pytest.mark.asyncio
    async def test_include_nested_path(self, backend):
        """A nested path includes its ancestors first."""
        response = await backend.find(
            Auth.master(), "Post", {}, {"include": ["author.team"], "order": "objectId"}
        )

        teams = [row["author"]["team"] for row in response["results"]]
        assert [team["name"] for team in teams] == ["red", "green", "red"]
        assert all(team["__type"] == "Object" for team in teams)

    @pytest.mark.asyncio
    async def test_include_mixed_classes_skipped(self, backend):
        """Pointers to different classes at one path are left alone."""
        await backend.storage.insert_one("Review", {"subject": _pointer("Team", "tred")})
        await backend.storage.insert_one("Review", {"subject": _pointer("_User", "uann")})

        response = await backend.find(Auth.master(), "Review", {}, {"include": "subject"})

        assert all(row["subject"]["__type"] == "Pointer" for row in response["results"])

    @pytest.mark.asyncio
    async def test_include_missing_target(self, backend):
        """Dangling pointers stay pointers."""
        await backend.create("Post", {"objectId": "p4", "author": _pointer("_User", "gone")})

        response = await backend.find(
            Auth.master(), "Post", {"objectId": "p4"}, {"include": "author"}
        )

        assert response["results"][0]["author"] == _pointer("_User", "gone")


class TestScoping:
    """Tests for ACL and session scoping."""

    @pytest.fixture
    async def notes(self, backend):
        owner_only = {"uann": {"read": True, "write": True}}
        await backend.create("Note", {"objectId": "n1", "ACL": owner_only})
        await backend.create("Note", {"objectId": "n2", "ACL": {"role:staff": {"read": True}}})
        await backend.create("Note", {"objectId": "n3"})
        await backend.create("Note", {"objectId": "n4", "ACL": {"*": {"read": True}}})
        return backend

    @pytest.mark.asyncio
    async def test_anonymous_sees_public(self, notes):
        """Anonymous callers see unrestricted and public rows."""
        response = await notes.find(Auth.nobody(), "Note", {})
        assert _values(response, "objectId") == ["n3", "n4"]

    @pytest.mark.asyncio
    async def test_user_sees_own_rows(self, notes):
        """A user sees rows readable by its id."""
        response = await notes.find(Auth.for_user({"objectId": "uann"}), "Note", {})
        assert _values(response, "objectId") == ["n1", "n3", "n4"]

    @pytest.mark.asyncio
    async def test_roles_widen_acl(self, notes):
        """Role membership grants role-readable rows."""
        auth = Auth.for_user({"objectId": "ubob"}, roles=["staff"])
        response = await notes.find(auth, "Note", {})
        assert _values(response, "objectId") == ["n2", "n3", "n4"]

    @pytest.mark.asyncio
    async def test_master_sees_everything(self, notes):
        """Master bypasses ACLs."""
        response = await notes.find(Auth.master(), "Note", {})
        assert _values(response, "objectId") == ["n1", "n2", "n3", "n4"]

    @pytest.mark.asyncio
    async def test_nested_queries_keep_acl(self, notes):
        """Nested queries run with the caller's Auth."""
        where = {"objectId": {"$select": _select("Note", "objectId")}}
        response = await notes.find(Auth.nobody(), "Note", where)
        assert _values(response, "objectId") == ["n3", "n4"]

    @pytest.mark.asyncio
    async def test_session_requires_user(self, backend):
        """Anonymous _Session queries fail."""
        with pytest.raises(InvalidSessionTokenError) as exc_info:
            await backend.find(Auth.nobody(), "_Session", {})
        assert str(exc_info.value) == "This session token is invalid."

    @pytest.mark.asyncio
    async def test_session_scoped_to_user(self, backend):
        """Users see only their own sessions."""
        await backend.create("_Session", {"user": _pointer("_User", "uann"), "sessionToken": "s1"})
        await backend.create("_Session", {"user": _pointer("_User", "ubob"), "sessionToken": "s2"})

        response = await backend.find(Auth.for_user({"objectId": "uann"}), "_Session", {})

        assert _values(response, "sessionToken") == ["s1"]


class TestAccessControl:
    """Tests for class-level permissions and the class-creation guard."""

    @pytest.mark.asyncio
    async def test_find_permission_denied(self, backend):
        """A CLP find entry denies callers outside it."""
        await backend.schema.add_class_if_not_exists("Secret", {}, {"find": {"role:admin": True}})

        with pytest.raises(PermissionDeniedError):
            await backend.find(Auth.nobody(), "Secret", {})
        with pytest.raises(PermissionDeniedError):
            await backend.find(Auth.for_user({"objectId": "uann"}, roles=["staff"]), "Secret", {})

    @pytest.mark.asyncio
    async def test_find_permission_granted(self, backend):
        """Matching roles and master pass the CLP."""
        await backend.schema.add_class_if_not_exists("Secret", {}, {"find": {"role:admin": True}})

        admin = Auth.for_user({"objectId": "uann"}, roles=["admin"])
        assert (await backend.find(admin, "Secret", {}))["results"] == []
        assert (await backend.find(Auth.master(), "Secret", {}))["results"] == []

    @pytest.mark.asyncio
    async def test_nested_query_checks_permission(self, backend):
        """CLPs apply to nested queries too."""
        await backend.schema.add_class_if_not_exists("Secret", {}, {"find": {"role:admin": True}})
        where = {"name": {"$select": _select("Secret", "name")}}

        with pytest.raises(PermissionDeniedError):
            await backend.find(Auth.nobody(), "Player", where)

    @pytest.mark.asyncio
    async def test_class_creation_guard(self):
        """Clients may not query unknown classes when creation is disabled."""
        config = _config(allow_client_class_creation=False)
        async with Backend(config, storage=InMemoryDocumentStore()) as backend:
            with pytest.raises(OperationForbiddenError) as exc_info:
                await backend.find(Auth.nobody(), "Ghost", {})
            assert str(exc_info.value) == (
                "This user is not allowed to access non-existent class: Ghost"
            )

            assert (await backend.find(Auth.master(), "Ghost", {}))["results"] == []
            assert (await backend.find(Auth.nobody(), "_Installation", {}))["results"] == []

    @pytest.mark.asyncio
    async def test_class_creation_guard_existing_class(self):
        """Existing classes stay queryable when creation is disabled."""
        config = _config(allow_client_class_creation=False)
        async with Backend(config, storage=InMemoryDocumentStore()) as backend:
            await backend.create("Book", {"title": "Dune"})

            response = await backend.find(Auth.nobody(), "Book", {})

            assert _values(response, "title") == ["Dune"]
