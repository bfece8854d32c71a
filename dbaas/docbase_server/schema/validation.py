"""
Name validation for classes and fields.

A class name is valid when it is a system class, a join-collection name
(_Join:<field>:<class>) or an identifier. Field names use the identifier
rule and must not shadow a default column of the class.
"""

from __future__ import annotations

import re

from .defaults import DEFAULT_SCHEMA_DEFAULTS, SchemaDefaults

JOIN_CLASS_PATTERN = re.compile(r"^_Join:[A-Za-z0-9_]+:[A-Za-z0-9_]+")
IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


def join_class_is_valid(class_name: str) -> bool:
    return bool(JOIN_CLASS_PATTERN.match(class_name))


def field_name_is_valid(field_name: str) -> bool:
    """Identifier rule shared by field names and user class names."""
    return isinstance(field_name, str) and bool(IDENTIFIER_PATTERN.match(field_name))


def class_name_is_valid(
    class_name: str,
    defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
) -> bool:
    if not isinstance(class_name, str):
        return False
    return (
        defaults.is_system_class(class_name)
        or join_class_is_valid(class_name)
        or field_name_is_valid(class_name)
    )


def field_name_is_valid_for_class(
    field_name: str,
    class_name: str,
    defaults: SchemaDefaults = DEFAULT_SCHEMA_DEFAULTS,
) -> bool:
    """Whether a field may be added to (or removed from) a class."""
    if not field_name_is_valid(field_name):
        return False
    return not defaults.is_default_column(field_name, class_name)


def join_collection_name(field_name: str, class_name: str) -> str:
    """Name of the collection materializing a relation field."""
    return f"_Join:{field_name}:{class_name}"


def invalid_class_name_message(class_name: str) -> str:
    return (
        f"Invalid classname: {class_name}, classnames can only have alphanumeric "
        "characters and _, and must start with an alpha character "
    )
