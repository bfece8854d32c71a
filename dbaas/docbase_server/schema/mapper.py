"""
Type Mapper: conversions between wire types, storage types and values.

- to_storage_type: {"type": "Pointer", "targetClass": "Team"} -> StorageType
- to_api_type: StorageType (or token) -> wire description
- infer_type: client value -> StorageType, or None when the value carries
  no type information (nulls, deletions, unknown discriminators)

All functions are pure.

Invariants:
    - to_storage_type(to_api_type(t)) == t for every StorageType t
    - infer_type never raises for JSON-shaped input

How to change safely:
    - A new `__type` or `__op` discriminator needs an inference rule here
      and a matching kind in types.py
"""

from __future__ import annotations

from typing import Any, Mapping

from ..errors import InvalidClassNameError, InvalidJSONError, MissingRequiredFieldError
from .defaults import DEFAULT_SCHEMA_DEFAULTS, SchemaDefaults
from .types import (
    ARRAY,
    BOOLEAN,
    BYTES,
    DATE,
    FILE,
    GEOPOINT,
    NUMBER,
    OBJECT,
    STRING,
    FieldKind,
    StorageType,
)
from .validation import class_name_is_valid, invalid_class_name_message

_KIND_BY_API_NAME = {kind.api_name: kind for kind in FieldKind}


def to_storage_type(
    api_type: Mapping[str, Any],
    defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
) -> StorageType:
    """Convert a wire type description to a StorageType.

    Args:
        api_type: Wire description, e.g. {"type": "Relation", "targetClass": "_User"}
        defaults: Schema defaults used to validate target class names

    Returns:
        The corresponding StorageType

    Raises:
        InvalidJSONError: Missing/unknown `type`, or empty targetClass
        MissingRequiredFieldError: Pointer/Relation without targetClass
        InvalidClassNameError: targetClass is not a valid class name
    """
    if not isinstance(api_type, Mapping):
        raise InvalidJSONError("invalid JSON")
    type_name = api_type.get("type")
    if not isinstance(type_name, str) or not type_name:
        raise InvalidJSONError("invalid JSON")

    kind = _KIND_BY_API_NAME.get(type_name)
    if kind is None:
        raise InvalidJSONError(f"invalid field type: {type_name}")

    if kind.needs_target:
        if "targetClass" not in api_type or api_type["targetClass"] is None:
            raise MissingRequiredFieldError(f"type {type_name} needs a class name")
        target_class = api_type["targetClass"]
        if not isinstance(target_class, str) or not target_class:
            raise InvalidJSONError("invalid targetClass")
        if not class_name_is_valid(target_class, defaults):
            raise InvalidClassNameError(invalid_class_name_message(target_class))
        return StorageType(kind, target_class)

    return StorageType(kind)


def to_api_type(storage_type: StorageType | str) -> dict[str, str]:
    """Convert a StorageType (or its token) to the wire description."""
    if isinstance(storage_type, str):
        storage_type = StorageType.from_token(storage_type)
    result = {"type": storage_type.kind.api_name}
    if storage_type.target_class is not None:
        result["targetClass"] = storage_type.target_class
    return result


def infer_type(value: Any) -> StorageType | None:
    """Infer the storage type a client value would commit.

    Returns:
        The inferred StorageType, or None when the value should not
        commit a type (null, Delete op, unrecognized discriminator)
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, str):
        return STRING
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, list):
        return ARRAY
    if isinstance(value, dict):
        return _infer_object_type(value)
    return None


def _infer_object_type(obj: dict[str, Any]) -> StorageType | None:
    type_tag = obj.get("__type")
    if type_tag is not None:
        if type_tag == "Pointer":
            if obj.get("className"):
                return StorageType.pointer(obj["className"])
        elif type_tag == "File":
            if obj.get("name") is not None:
                return FILE
        elif type_tag == "Date":
            if obj.get("iso") is not None:
                return DATE
        elif type_tag == "GeoPoint":
            if obj.get("latitude") is not None and obj.get("longitude") is not None:
                return GEOPOINT
        elif type_tag == "Bytes":
            if obj.get("base64") is not None:
                return BYTES
        else:
            return None

    if obj.get("$ne") is not None:
        return infer_type(obj["$ne"])

    op = obj.get("__op")
    if op is not None:
        if op == "Increment":
            return NUMBER
        if op in ("Add", "AddUnique", "Remove"):
            return ARRAY
        if op in ("AddRelation", "RemoveRelation"):
            objects = obj.get("objects") or []
            first = objects[0] if objects else None
            if isinstance(first, dict) and first.get("className"):
                return StorageType.relation(first["className"])
            return None
        if op == "Batch":
            ops = obj.get("ops") or []
            return infer_type(ops[0]) if ops else None
        # Delete and unknown ops carry no type
        return None

    return OBJECT

