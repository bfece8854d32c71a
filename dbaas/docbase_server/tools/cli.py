"""
Command line tool for Docbase.

Commands:
- schema list: Print every class schema
- schema show: Print one class schema
- schema apply: Create or extend classes from a YAML/JSON definition file
- schema delete-field: Remove a field and its data
- create: Validate and insert one object
- query: Run a find with the full query pipeline

Usage:
    docbase schema list
    docbase schema apply --file classes.yaml
    docbase create Book --data '{"title": "Dune", "pages": 412}'
    docbase query Book --where '{"pages": {"$gt": 300}}' --order=-pages --count

Definition file format:
    classes:
      - className: Book
        fields:
          title: {type: String}
          author: {type: Pointer, targetClass: _User}
        classLevelPermissions:
          find: {"*": true}

Invariants:
    - Output is JSON on stdout
    - Errors print the error envelope on stderr and exit 1

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from ..auth import Auth
from ..config import ServerConfig
from ..errors import DocbaseError, InvalidJSONError
from ..main import Backend, setup_logging
from ..schema import SchemaStore
from ..storage import StorageError

logger = logging.getLogger(__name__)


def load_definitions(path: str) -> list[dict[str, Any]]:
    """Load class definitions from a YAML or JSON file.

    Raises:
        InvalidJSONError: If the file does not hold a list of classes
    """
    text = Path(path).read_text()
    data = yaml.safe_load(text) if not path.endswith(".json") else json.loads(text)
    if isinstance(data, dict):
        data = data.get("classes")
    if not isinstance(data, list) or not all(isinstance(c, dict) for c in data):
        raise InvalidJSONError(f"{path}: expected a list of class definitions")
    for definition in data:
        if not isinstance(definition.get("className"), str):
            raise InvalidJSONError(f"{path}: every class definition needs a className")
    return data


class DocbaseCLI:
    """CLI commands bound to a started Backend.

    Example:
        >>> async with Backend(config) as backend:
        ...     cli = DocbaseCLI(backend)
        ...     await cli.schema_list()
    """

    def __init__(self, backend: Backend) -> None:
        self.backend = backend

    @property
    def schema(self) -> SchemaStore:
        assert self.backend.schema is not None
        return self.backend.schema

    async def schema_list(self) -> list[dict[str, Any]]:
        await self.schema.reload()
        return self.schema.get_all_schemas()

    async def schema_show(self, class_name: str) -> dict[str, Any]:
        await self.schema.reload()
        return self.schema.get_one_schema(class_name)

    async def schema_apply(self, definitions: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Create missing classes and add missing fields to existing ones.

        Existing fields are left alone; a definition never retypes or
        deletes a field.
        """
        applied = []
        for definition in definitions:
            class_name = definition["className"]
            fields = definition.get("fields") or {}
            perms = definition.get("classLevelPermissions")
            if not await self.schema.has_class(class_name):
                applied.append(await self.schema.add_class_if_not_exists(class_name, fields, perms))
                continue
            new_fields = {
                name: api_type
                for name, api_type in fields.items()
                if not self.schema.has_keys(class_name, [name])
            }
            applied.append(await self.schema.update_class(class_name, new_fields, perms))
        return applied

    async def schema_delete_field(self, class_name: str, field_name: str) -> dict[str, Any]:
        await self.schema.delete_field(field_name, class_name)
        return self.schema.get_one_schema(class_name)

    async def create(self, class_name: str, obj: dict[str, Any]) -> dict[str, Any]:
        return await self.backend.create(class_name, obj)

    async def query(
        self,
        class_name: str,
        where: dict[str, Any],
        options: dict[str, Any],
        master: bool = False,
    ) -> dict[str, Any]:
        auth = Auth.master() if master else Auth.nobody()
        return await self.backend.find(auth, class_name, where, options)


def _parse_json_arg(name: str, value: str | None) -> dict[str, Any]:
    if value is None:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise InvalidJSONError(f"{name} is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise InvalidJSONError(f"{name} must be a JSON object")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="docbase", description="Docbase data-access tool")
    parser.add_argument("--data-dir", help="Override DATA_DIR for the SQLite store")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # schema commands
    schema_parser = subparsers.add_parser("schema", help="Manage class schemas")
    schema_sub = schema_parser.add_subparsers(dest="schema_command", required=True)
    schema_sub.add_parser("list", help="Print every class schema")
    show_parser = schema_sub.add_parser("show", help="Print one class schema")
    show_parser.add_argument("class_name")
    apply_parser = schema_sub.add_parser("apply", help="Apply class definitions")
    apply_parser.add_argument("--file", "-f", required=True, help="YAML or JSON definition file")
    delete_parser = schema_sub.add_parser("delete-field", help="Delete a field and its data")
    delete_parser.add_argument("class_name")
    delete_parser.add_argument("field_name")

    # create command
    create_parser = subparsers.add_parser("create", help="Validate and insert an object")
    create_parser.add_argument("class_name")
    create_parser.add_argument("--data", required=True, help="Object as JSON")

    # query command
    query_parser = subparsers.add_parser("query", help="Run a find query")
    query_parser.add_argument("class_name")
    query_parser.add_argument("--where", help="Where clause as JSON")
    query_parser.add_argument("--keys", help="Comma-separated projection")
    query_parser.add_argument("--order", help="Comma-separated sort keys (-key for descending)")
    query_parser.add_argument("--include", help="Comma-separated include paths")
    query_parser.add_argument("--limit", type=int)
    query_parser.add_argument("--skip", type=int)
    query_parser.add_argument("--count", action="store_true")
    query_parser.add_argument("--master", action="store_true", help="Run with master privileges")

    return parser


async def run(args: argparse.Namespace, config: ServerConfig) -> Any:
    """Execute a parsed command and return its JSON-serializable result."""
    async with Backend(config) as backend:
        cli = DocbaseCLI(backend)

        if args.command == "schema":
            if args.schema_command == "list":
                return await cli.schema_list()
            if args.schema_command == "show":
                return await cli.schema_show(args.class_name)
            if args.schema_command == "apply":
                return await cli.schema_apply(load_definitions(args.file))
            return await cli.schema_delete_field(args.class_name, args.field_name)

        if args.command == "create":
            return await cli.create(args.class_name, _parse_json_arg("--data", args.data))

        options: dict[str, Any] = {}
        for name in ("keys", "order", "include", "limit", "skip"):
            value = getattr(args, name)
            if value is not None:
                options[name] = value
        if args.count:
            options["count"] = True
        where = _parse_json_arg("--where", args.where)
        return await cli.query(args.class_name, where, options, master=args.master)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(json.dumps({"code": "INVALID_CONFIG", "error": str(e)}), file=sys.stderr)
        return 1
    if args.data_dir:
        config.storage = dataclasses.replace(config.storage, data_dir=args.data_dir)
    setup_logging(config)

    try:
        result = asyncio.run(run(args, config))
    except DocbaseError as e:
        print(json.dumps(e.to_dict()), file=sys.stderr)
        return 1
    except StorageError as e:
        print(json.dumps({"code": "STORAGE_ERROR", "error": str(e)}), file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
