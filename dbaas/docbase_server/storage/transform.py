"""
Conversions between API documents and storage documents.

API form                                   Storage form
{"owner": {"__type": "Pointer",            {"_p_owner": "_User$a1b2"}
           "className": "_User",
           "objectId": "a1b2"}}
{"ACL": {"*": {"read": true},              {"_rperm": ["*", "u1"],
         "u1": {"read": true,                "_wperm": ["u1"]}
                "write": true}}}

Where clauses keep their field names; pointer operands are rewritten to the
stored "<Class>$<objectId>" string and the matcher resolves a field to its
"_p_" column when the plain column is absent.

Invariants:
    - from_storage_document(to_storage_document(d)) == d for API documents
    - Input documents are never mutated
"""

from __future__ import annotations

import copy
from typing import Any, Dict

POINTER_COLUMN_PREFIX = "_p_"
READ_PERMISSION_COLUMN = "_rperm"
WRITE_PERMISSION_COLUMN = "_wperm"


def is_pointer(value: Any) -> bool:
    return isinstance(value, dict) and value.get("__type") == "Pointer"


def pointer_to_string(pointer: Dict[str, Any]) -> str:
    return f"{pointer.get('className')}${pointer.get('objectId')}"


def string_to_pointer(value: str) -> Dict[str, Any]:
    class_name, _, object_id = value.partition("$")
    return {"__type": "Pointer", "className": class_name, "objectId": object_id}


def to_storage_document(document: Dict[str, Any]) -> Dict[str, Any]:
    """Encode an API document for storage."""
    stored: Dict[str, Any] = {}
    for key, value in document.items():
        if is_pointer(value):
            stored[POINTER_COLUMN_PREFIX + key] = pointer_to_string(value)
        elif key == "ACL" and isinstance(value, dict):
            stored[READ_PERMISSION_COLUMN] = [
                subject for subject, perms in value.items() if perms.get("read")
            ]
            stored[WRITE_PERMISSION_COLUMN] = [
                subject for subject, perms in value.items() if perms.get("write")
            ]
        else:
            stored[key] = copy.deepcopy(value)
    return stored


def from_storage_document(stored: Dict[str, Any]) -> Dict[str, Any]:
    """Decode a storage document into API form."""
    document: Dict[str, Any] = {}
    acl: Dict[str, Dict[str, bool]] = {}
    has_acl = False
    for key, value in stored.items():
        if key.startswith(POINTER_COLUMN_PREFIX) and isinstance(value, str):
            document[key[len(POINTER_COLUMN_PREFIX):]] = string_to_pointer(value)
        elif key in (READ_PERMISSION_COLUMN, WRITE_PERMISSION_COLUMN):
            has_acl = True
            perm = "read" if key == READ_PERMISSION_COLUMN else "write"
            for subject in value or []:
                acl.setdefault(subject, {})[perm] = True
        else:
            document[key] = copy.deepcopy(value)
    if has_acl:
        document["ACL"] = acl
    return document


def to_storage_where(where: Any) -> Any:
    """Rewrite pointer operands in a where tree to their stored form."""
    if is_pointer(where):
        return pointer_to_string(where)
    if isinstance(where, list):
        return [to_storage_where(item) for item in where]
    if isinstance(where, dict):
        return {key: to_storage_where(value) for key, value in where.items()}
    return where


def apply_update(document: Dict[str, Any], update: Dict[str, Any]) -> bool:
    """Apply a $set/$unset update in place.

    Returns:
        True if the document changed
    """
    changed = False
    for key, value in (update.get("$set") or {}).items():
        if document.get(key) != value or key not in document:
            document[key] = copy.deepcopy(value)
            changed = True
    for key in update.get("$unset") or {}:
        if key in document:
            del document[key]
            changed = True
    return changed
