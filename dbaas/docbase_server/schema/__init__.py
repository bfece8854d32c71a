"""
Schema module for Docbase.

This module provides the class schema system, including:
- Storage types and the Type Mapper (wire <-> storage <-> inferred)
- Class-level permission validation and authorization
- The SchemaStore registry backed by the persisted schema collection

Invariants:
    - A committed field type never changes; fields are added or deleted
    - At most one GeoPoint field per class
    - Default columns can never be added or removed

How to change safely:
    - New field kinds need a token (types.py) and a mapping (mapper.py)
    - New CLP operations go in defaults.CLP_OPERATIONS
"""

from .defaults import DEFAULT_SCHEMA_DEFAULTS, SchemaDefaults, build_schema_defaults
from .mapper import infer_type, to_api_type, to_storage_type
from .permissions import (
    PermissionChecker,
    SubjectType,
    merge_with_default_permissions,
    parse_subject,
    validate_class_level_permissions,
)
from .store import SchemaStore
from .types import FieldKind, StorageType
from .validation import (
    class_name_is_valid,
    field_name_is_valid,
    field_name_is_valid_for_class,
    join_collection_name,
)

__all__ = [
    # Types
    "FieldKind",
    "StorageType",
    # Defaults
    "SchemaDefaults",
    "DEFAULT_SCHEMA_DEFAULTS",
    "build_schema_defaults",
    # Type Mapper
    "to_storage_type",
    "to_api_type",
    "infer_type",
    # Permissions
    "PermissionChecker",
    "SubjectType",
    "parse_subject",
    "validate_class_level_permissions",
    "merge_with_default_permissions",
    # Names
    "class_name_is_valid",
    "field_name_is_valid",
    "field_name_is_valid_for_class",
    "join_collection_name",
    # Registry
    "SchemaStore",
]
