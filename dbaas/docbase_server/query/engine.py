"""
Query engine for Docbase.

A RestQuery runs one find request through a fixed pipeline:

    parse options -> scope by ACL / session -> redirect class
      -> class-creation guard -> CLP find check -> desugar operators
      -> find -> count -> include expansion

Failure at any stage aborts the whole request. Nested queries (operator
desugaring and include expansion) are new RestQuery instances sharing the
caller's Auth, executed sequentially.

Invariants:
    - The caller's where tree is deep-copied; only the copy is rewritten
    - After desugaring the tree holds no $select, $dontSelect, $inQuery or
      $notInQuery
    - _User rows never carry password, with or without a keys projection
    - Each desugaring pass removes exactly one operator occurrence and
      never introduces one; values merged into $in / $nin are literals
    - The number of passes and the tree depth are capped by QueryConfig

How to change safely:
    - Keep stage order: the CLP check and class-creation guard must run
      before any nested query executes
    - New operators need a shape check in where.py
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..auth import Auth
from ..config import QueryConfig
from ..errors import (
    InvalidJSONError,
    InvalidQueryError,
    InvalidSessionTokenError,
    OperationForbiddenError,
)
from ..schema.store import SchemaStore
from ..storage.base import DocumentStore
from .include import common_class_name, find_pointers, replace_pointers
from .options import QueryOptions, parse_options
from .where import (
    DONT_SELECT,
    IN_QUERY,
    NOT_IN_QUERY,
    SELECT,
    OperatorSite,
    check_depth,
    count_query_operators,
    find_query_operator,
    merge_values,
    parse_in_query_operand,
    parse_select_operand,
)

logger = logging.getLogger(__name__)

SESSION_CLASS = "_Session"
USER_CLASS = "_User"


class RestQuery:
    """One find request.

    Attributes:
        class_name: Effective class (after redirect)
        where: The engine's private copy of the where tree
        options: Parsed query options
        find_options: Options passed to the storage find (acl, sort, ...)
        response: Result envelope, filled by execute()

    Example:
        >>> query = RestQuery(schema, storage, Auth.master(), "Book",
        ...                   {"pages": {"$gt": 300}}, {"order": "-pages", "count": 1})
        >>> await query.execute()
        {'results': [...], 'count': 2}
    """

    def __init__(
        self,
        schema: SchemaStore,
        storage: DocumentStore,
        auth: Auth,
        class_name: str,
        where: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
        config: Optional[QueryConfig] = None,
    ) -> None:
        """Build a query and apply session scoping.

        Raises:
            InvalidJSONError: Bad where or options
            InvalidSessionTokenError: Anonymous caller on _Session
        """
        if where is not None and not isinstance(where, Mapping):
            raise InvalidJSONError("where must be an object")

        self.schema = schema
        self.storage = storage
        self.auth = auth
        self.config = config or QueryConfig()
        self.class_name = class_name
        self.where: Dict[str, Any] = copy.deepcopy(dict(where or {}))
        self.options: QueryOptions = parse_options(options)
        self.find_options: Dict[str, Any] = {}
        self.response: Dict[str, Any] = {"results": []}

        if not auth.is_master:
            if class_name == SESSION_CLASS:
                if auth.user_id is None:
                    raise InvalidSessionTokenError("This session token is invalid.")
                user_pointer = {
                    "__type": "Pointer",
                    "className": USER_CLASS,
                    "objectId": auth.user_id,
                }
                self.where = {"$and": [self.where, {"user": user_pointer}]}
            else:
                self.find_options["acl"] = [auth.user_id] if auth.user_id else None

        self.find_options.update(self.options.find_options())

    def _nested(self, class_name: str, where: Mapping[str, Any]) -> RestQuery:
        return RestQuery(
            self.schema, self.storage, self.auth, class_name, where, config=self.config
        )

    async def execute(self) -> Dict[str, Any]:
        """Run the pipeline.

        Returns:
            {"results": [...], "count"?: N, "className"?: redirected class}
        """
        await self.build_rest_where()
        await self.run_find()
        await self.run_count()
        await self.handle_include()
        return self.response

    async def build_rest_where(self) -> None:
        await self.get_user_and_role_acl()
        await self.redirect_class_name_for_key()
        await self.validate_client_class_creation()
        await self.validate_find_permission()
        await self.desugar()

    async def get_user_and_role_acl(self) -> None:
        """Widen the acl option to the caller's roles plus user id."""
        if self.auth.is_master or self.auth.user_id is None:
            return
        if "acl" not in self.find_options:
            return
        self.find_options["acl"] = await self.auth.acl_group()

    async def redirect_class_name_for_key(self) -> None:
        key = self.options.redirect_class_name_for_key
        if not key:
            return
        new_class_name = await self.schema.redirect_class_name_for_key(self.class_name, key)
        logger.debug(f"Redirected query {self.class_name}.{key} -> {new_class_name}")
        self.class_name = new_class_name
        self.response["className"] = new_class_name

    async def validate_client_class_creation(self) -> None:
        """Reject non-master queries that would create a new class.

        Raises:
            OperationForbiddenError: Class creation is disabled for clients
                and the class neither exists nor is a system class
        """
        if self.config.allow_client_class_creation or self.auth.is_master:
            return
        if self.schema.defaults.is_system_class(self.class_name):
            return
        if await self.schema.has_class(self.class_name):
            return
        raise OperationForbiddenError(
            f"This user is not allowed to access non-existent class: {self.class_name}"
        )

    async def validate_find_permission(self) -> None:
        """Enforce the class-level find permission for non-master callers."""
        if self.auth.is_master:
            return
        if not await self.schema.has_class(self.class_name):
            return
        acl_group = await self.auth.acl_group()
        self.schema.validate_permission(self.class_name, acl_group, "find")

    async def desugar(self) -> None:
        """Rewrite query operators into $in / $nin until none remain.

        Raises:
            InvalidQueryError: Malformed operator, a tree nested deeper than
                max_where_depth, or more than max_desugar_passes rewrites
        """
        max_depth = self.config.max_where_depth
        check_depth(self.where, max_depth)

        pending = count_query_operators(self.where, max_depth)
        if pending > self.config.max_desugar_passes:
            raise InvalidQueryError(
                f"where clause uses more than {self.config.max_desugar_passes} query operators"
            )

        for _ in range(pending):
            site = find_query_operator(self.where, max_depth)
            if site is None:
                break
            await self._resolve(site)

        if count_query_operators(self.where, max_depth):
            raise InvalidQueryError(f"query operators left in where clause on {self.class_name}")
        if pending:
            logger.debug(f"Desugared {pending} query operators on {self.class_name}")

    async def _resolve(self, site: OperatorSite) -> None:
        if site.operator in (SELECT, DONT_SELECT):
            class_name, where, key = parse_select_operand(site.operator, site.operand)
            rows = await self._run_nested(site.operator, class_name, where)
            values = [row[key] for row in rows if row.get(key) is not None]
        elif site.operator in (IN_QUERY, NOT_IN_QUERY):
            class_name, where = parse_in_query_operand(site.operator, site.operand)
            rows = await self._run_nested(site.operator, class_name, where)
            values = [
                {"__type": "Pointer", "className": class_name, "objectId": row.get("objectId")}
                for row in rows
            ]
        else:
            raise InvalidQueryError(f"unsupported query operator {site.operator}")
        merge_values(site, values)

    async def _run_nested(
        self,
        operator: str,
        class_name: str,
        where: Mapping[str, Any],
    ) -> List[Dict[str, Any]]:
        logger.debug(f"Running nested {operator} query on {class_name}")
        response = await self._nested(class_name, where).execute()
        return response["results"]

    async def run_find(self) -> None:
        results = await self.storage.find(self.class_name, self.where, self.find_options)
        if self.class_name == USER_CLASS:
            for row in results:
                row.pop("password", None)
        if self.options.keys:
            keys = self.options.keys
            results = [{key: row[key] for key in keys if key in row} for row in results]
        self.response["results"] = results

    async def run_count(self) -> None:
        if not self.options.count:
            return
        count_options = dict(self.find_options)
        count_options.pop("skip", None)
        count_options.pop("limit", None)
        count_options.pop("sort", None)
        count_options["count"] = True
        counted = await self.storage.find(self.class_name, self.where, count_options)
        self.response["count"] = counted[0] if counted else 0

    async def handle_include(self) -> None:
        for path in self.options.include:
            await self._include_path(path)

    async def _include_path(self, path: List[str]) -> None:
        pointers = find_pointers(self.response["results"], path)
        if not pointers:
            return
        class_name = common_class_name(pointers)
        if class_name is None:
            logger.warning(
                f"Skipping include {'.'.join(path)}: pointers to mixed classes",
                extra={"class_name": self.class_name, "include": ".".join(path)},
            )
            return

        object_ids = list(dict.fromkeys(p.get("objectId") for p in pointers))
        logger.debug(f"Including {len(object_ids)} {class_name} objects at {'.'.join(path)}")
        response = await self._nested(class_name, {"objectId": {"$in": object_ids}}).execute()

        resolved: Dict[str, Dict[str, Any]] = {}
        for obj in response["results"]:
            if class_name == USER_CLASS:
                obj.pop("sessionToken", None)
            resolved[obj.get("objectId")] = obj
        replace_pointers(pointers, resolved)
