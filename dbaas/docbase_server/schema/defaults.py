"""
Static schema configuration for Docbase.

SchemaDefaults bundles the tables every schema and query operation consults:
default columns (universal and per system class), required columns, the
valid class-level-permission operations and the system class names.

It is built once at process start (DEFAULT_SCHEMA_DEFAULTS) and handed by
reference to the SchemaStore and the query engine. All mappings are
read-only views; nothing in the package mutates them.

Invariants:
    - Universal columns exist on every class and can never be added or removed
    - System-class default columns can never be added or removed on that class
    - A fresh CLP copy is returned by default_class_level_permissions()

How to change safely:
    - Adding a system class also requires adding it to SYSTEM_CLASSES
    - Removing a default column breaks existing persisted schemas
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

SYSTEM_CLASSES = ("_User", "_Installation", "_Role", "_Session", "_Product")

CLP_OPERATIONS = ("find", "get", "create", "update", "delete", "addField")

# Wire-form type descriptions for columns every class has
_UNIVERSAL_COLUMNS: dict[str, dict[str, str]] = {
    "objectId": {"type": "String"},
    "createdAt": {"type": "Date"},
    "updatedAt": {"type": "Date"},
    "ACL": {"type": "ACL"},
}

# Storage tokens persisted for the universal columns (ACL lives on the row)
_UNIVERSAL_TOKENS: dict[str, str] = {
    "objectId": "string",
    "createdAt": "date",
    "updatedAt": "date",
}

_CLASS_COLUMNS: dict[str, dict[str, dict[str, str]]] = {
    "_User": {
        "username": {"type": "String"},
        "password": {"type": "String"},
        "authData": {"type": "Object"},
        "email": {"type": "String"},
        "emailVerified": {"type": "Boolean"},
    },
    "_Installation": {
        "installationId": {"type": "String"},
        "deviceToken": {"type": "String"},
        "channels": {"type": "Array"},
        "deviceType": {"type": "String"},
        "pushType": {"type": "String"},
        "GCMSenderId": {"type": "String"},
        "timeZone": {"type": "String"},
        "localeIdentifier": {"type": "String"},
        "badge": {"type": "Number"},
    },
    "_Role": {
        "name": {"type": "String"},
        "users": {"type": "Relation", "targetClass": "_User"},
        "roles": {"type": "Relation", "targetClass": "_Role"},
    },
    "_Session": {
        "restricted": {"type": "Boolean"},
        "user": {"type": "Pointer", "targetClass": "_User"},
        "installationId": {"type": "String"},
        "sessionToken": {"type": "String"},
        "expiresAt": {"type": "Date"},
        "createdWith": {"type": "Object"},
    },
    "_Product": {
        "productIdentifier": {"type": "String"},
        "download": {"type": "File"},
        "downloadName": {"type": "String"},
        "icon": {"type": "File"},
        "order": {"type": "Number"},
        "title": {"type": "String"},
        "subtitle": {"type": "String"},
    },
}

_REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "_Product": ("productIdentifier", "icon", "order", "title", "subtitle"),
    "_Role": ("name", "ACL"),
}


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    return value


@dataclass(frozen=True)
class SchemaDefaults:
    """Immutable default tables.

    Attributes:
        system_classes: Built-in class names
        clp_operations: Operations a CLP document may name
        universal_columns: Wire types of the columns every class has
        universal_tokens: Storage tokens persisted for universal columns
        class_columns: Wire types of each system class's own default columns
        required_columns: Columns an object of the class must carry
    """

    system_classes: frozenset[str]
    clp_operations: tuple[str, ...]
    universal_columns: Mapping[str, Mapping[str, str]]
    universal_tokens: Mapping[str, str]
    class_columns: Mapping[str, Mapping[str, Mapping[str, str]]]
    required_columns: Mapping[str, tuple[str, ...]]

    def columns_for(self, class_name: str) -> Mapping[str, Mapping[str, str]]:
        """System default columns of a class (empty for user classes)."""
        return self.class_columns.get(class_name, MappingProxyType({}))

    def is_default_column(self, field_name: str, class_name: str) -> bool:
        """Whether a field is a universal or class default column."""
        return field_name in self.universal_columns or field_name in self.columns_for(class_name)

    def is_system_class(self, class_name: str) -> bool:
        return class_name in self.system_classes

    def default_class_level_permissions(self) -> dict[str, dict[str, bool]]:
        """Fully-open CLP ({"*": True} for every operation), freshly allocated."""
        return {operation: {"*": True} for operation in self.clp_operations}


def build_schema_defaults() -> SchemaDefaults:
    """Build the default tables."""
    return SchemaDefaults(
        system_classes=frozenset(SYSTEM_CLASSES),
        clp_operations=CLP_OPERATIONS,
        universal_columns=_freeze(_UNIVERSAL_COLUMNS),
        universal_tokens=_freeze(_UNIVERSAL_TOKENS),
        class_columns=_freeze(_CLASS_COLUMNS),
        required_columns=MappingProxyType(dict(_REQUIRED_COLUMNS)),
    )


DEFAULT_SCHEMA_DEFAULTS = build_schema_defaults()
