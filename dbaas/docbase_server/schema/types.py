"""
Core type definitions for the Docbase schema system.

A class schema maps field names to a StorageType. StorageType is a closed
tagged value: a FieldKind plus, for Pointer and Relation, the target class.
It has two textual forms:

- the compact storage token persisted in the schema collection
  ("string", "*Team", "relation<_User>", ...)
- the wire form returned to clients ({"type": "Pointer", "targetClass": "Team"})

Conversion to and from the wire form lives in mapper.py; this module only
knows about tokens.

Invariants:
    - Pointer and Relation always carry a target class; other kinds never do
    - from_token(t).to_token() == t for every canonical token
    - "map" is accepted as a legacy alias of "object" and never produced

How to change safely:
    - New kinds need a token, a wire name and an inference rule in mapper.py
    - Never change an existing token: persisted schema rows depend on it
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from ..errors import InvalidJSONError

POINTER_PREFIX = "*"
RELATION_PREFIX = "relation<"
RELATION_SUFFIX = ">"


class FieldKind(Enum):
    """Supported field kinds.

    The value is the storage token for kinds without a target class.
    """

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"
    GEOPOINT = "geopoint"
    FILE = "file"
    BYTES = "bytes"
    POINTER = "pointer"
    RELATION = "relation"

    @property
    def api_name(self) -> str:
        """Name used in the wire `type` attribute."""
        return _API_NAMES[self]

    @property
    def needs_target(self) -> bool:
        return self in (FieldKind.POINTER, FieldKind.RELATION)


_API_NAMES = {
    FieldKind.STRING: "String",
    FieldKind.NUMBER: "Number",
    FieldKind.BOOLEAN: "Boolean",
    FieldKind.DATE: "Date",
    FieldKind.OBJECT: "Object",
    FieldKind.ARRAY: "Array",
    FieldKind.GEOPOINT: "GeoPoint",
    FieldKind.FILE: "File",
    FieldKind.BYTES: "Bytes",
    FieldKind.POINTER: "Pointer",
    FieldKind.RELATION: "Relation",
}

_TOKEN_ALIASES = {"map": FieldKind.OBJECT}


@dataclass(frozen=True)
class StorageType:
    """Type committed for one field of a class.

    Attributes:
        kind: The field kind
        target_class: Target class name for POINTER and RELATION

    Example:
        >>> StorageType.from_token("*Team")
        StorageType(kind=<FieldKind.POINTER: 'pointer'>, target_class='Team')
        >>> StorageType.relation("_User").to_token()
        'relation<_User>'
    """

    kind: FieldKind
    target_class: str | None = None

    def __post_init__(self) -> None:
        if self.kind.needs_target and not self.target_class:
            raise ValueError(f"{self.kind.api_name} type requires a target class")
        if not self.kind.needs_target and self.target_class is not None:
            raise ValueError(f"{self.kind.api_name} type takes no target class")

    @classmethod
    def pointer(cls, target_class: str) -> StorageType:
        return cls(FieldKind.POINTER, target_class)

    @classmethod
    def relation(cls, target_class: str) -> StorageType:
        return cls(FieldKind.RELATION, target_class)

    @property
    def is_pointer(self) -> bool:
        return self.kind is FieldKind.POINTER

    @property
    def is_relation(self) -> bool:
        return self.kind is FieldKind.RELATION

    @property
    def is_geopoint(self) -> bool:
        return self.kind is FieldKind.GEOPOINT

    def to_token(self) -> str:
        """Convert to the persisted storage token."""
        if self.kind is FieldKind.POINTER:
            return f"{POINTER_PREFIX}{self.target_class}"
        if self.kind is FieldKind.RELATION:
            return f"{RELATION_PREFIX}{self.target_class}{RELATION_SUFFIX}"
        return self.kind.value

    @classmethod
    def from_token(cls, token: str) -> StorageType:
        """Parse a persisted storage token.

        Raises:
            InvalidJSONError: If the token is not a known storage type
        """
        if not isinstance(token, str) or not token:
            raise InvalidJSONError(f"invalid storage type: {token!r}")
        if token.startswith(POINTER_PREFIX):
            return cls.pointer(token[len(POINTER_PREFIX):])
        if token.startswith(RELATION_PREFIX) and token.endswith(RELATION_SUFFIX):
            target = token[len(RELATION_PREFIX):-len(RELATION_SUFFIX)]
            if target:
                return cls.relation(target)
        if token in _TOKEN_ALIASES:
            return cls(_TOKEN_ALIASES[token])
        for kind in FieldKind:
            if not kind.needs_target and kind.value == token:
                return cls(kind)
        raise InvalidJSONError(f"invalid storage type: {token!r}")

    def __str__(self) -> str:
        return self.to_token()


STRING = StorageType(FieldKind.STRING)
NUMBER = StorageType(FieldKind.NUMBER)
BOOLEAN = StorageType(FieldKind.BOOLEAN)
DATE = StorageType(FieldKind.DATE)
OBJECT = StorageType(FieldKind.OBJECT)
ARRAY = StorageType(FieldKind.ARRAY)
GEOPOINT = StorageType(FieldKind.GEOPOINT)
FILE = StorageType(FieldKind.FILE)
BYTES = StorageType(FieldKind.BYTES)
