"""
Where-clause evaluation over storage documents.

Shared by every adapter that cannot push queries down to its backend. The
supported operator set is the primitive one the query engine emits after
desugaring; the high-level operators ($select, $inQuery, ...) never reach
this module.

Supported:
    $and, $or, $nor                      (top level, list of clauses)
    $eq, $ne, $lt, $lte, $gt, $gte       (comparison)
    $in, $nin, $all                      (membership)
    $exists                              (presence)
    $regex with optional $options        (strings)

Invariants:
    - Array fields match a scalar condition if any element matches
    - Values of incomparable types never satisfy an ordering operator
    - A field missing from the document falls back to its "_p_" column
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .base import UnsupportedQueryError
from .transform import POINTER_COLUMN_PREFIX, READ_PERMISSION_COLUMN

_MISSING = object()

_LOGICAL_OPERATORS = ("$and", "$or", "$nor")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def get_field(document: Dict[str, Any], key: str) -> Any:
    """Resolve a (possibly dotted) key, or _MISSING."""
    if key in document:
        return document[key]
    pointer_key = POINTER_COLUMN_PREFIX + key
    if pointer_key in document:
        return document[pointer_key]
    current: Any = document
    for part in key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def matches(document: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    """Whether a storage document satisfies a where clause."""
    for key, condition in (where or {}).items():
        if key in _LOGICAL_OPERATORS:
            if not isinstance(condition, list):
                raise UnsupportedQueryError(f"{key} requires a list of clauses")
            results = (matches(document, clause) for clause in condition)
            if key == "$and" and not all(results):
                return False
            if key == "$or" and not any(results):
                return False
            if key == "$nor" and any(results):
                return False
            continue
        if key.startswith("$"):
            raise UnsupportedQueryError(f"unsupported top-level operator {key}")
        if not _match_condition(get_field(document, key), condition):
            return False
    return True


def _is_operator_dict(condition: Any) -> bool:
    return (
        isinstance(condition, dict)
        and bool(condition)
        and all(isinstance(k, str) and k.startswith("$") for k in condition)
    )


def _match_condition(value: Any, condition: Any) -> bool:
    if not _is_operator_dict(condition):
        return _equals(value, condition)

    for op, operand in condition.items():
        if op == "$options":
            continue
        if op == "$eq":
            ok = _equals(value, operand)
        elif op == "$ne":
            ok = not _equals(value, operand)
        elif op in ("$lt", "$lte", "$gt", "$gte"):
            ok = _compare(value, op, operand)
        elif op == "$in":
            ok = any(_equals(value, item) for item in _as_list(op, operand))
        elif op == "$nin":
            ok = not any(_equals(value, item) for item in _as_list(op, operand))
        elif op == "$all":
            ok = isinstance(value, list) and all(
                any(_scalar_equals(element, item) for element in value)
                for item in _as_list(op, operand)
            )
        elif op == "$exists":
            ok = (value is not _MISSING) == bool(operand)
        elif op == "$regex":
            ok = _regex(value, operand, condition.get("$options", ""))
        else:
            raise UnsupportedQueryError(f"unsupported operator {op}")
        if not ok:
            return False
    return True


def _as_list(op: str, operand: Any) -> List[Any]:
    if not isinstance(operand, list):
        raise UnsupportedQueryError(f"{op} requires a list")
    return operand


def _normalize(value: Any) -> Any:
    if isinstance(value, dict) and value.get("__type") == "Date" and "iso" in value:
        return value["iso"]
    return value


def _scalar_equals(left: Any, right: Any) -> bool:
    left, right = _normalize(left), _normalize(right)
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return any(_scalar_equals(element, expected) for element in value)
    return _scalar_equals(value, expected)


def _compare(value: Any, op: str, operand: Any) -> bool:
    if value is _MISSING or value is None:
        return False
    left, right = _normalize(value), _normalize(operand)
    if isinstance(left, bool) or isinstance(right, bool):
        return False
    try:
        if op == "$lt":
            return left < right
        if op == "$lte":
            return left <= right
        if op == "$gt":
            return left > right
        return left >= right
    except TypeError:
        return False


def _regex(value: Any, pattern: Any, options: str) -> bool:
    if not isinstance(value, str) or not isinstance(pattern, str):
        return False
    flags = 0
    for flag in options or "":
        flags |= _REGEX_FLAGS.get(flag, 0)
    return re.search(pattern, value, flags) is not None


def is_visible(document: Dict[str, Any], acl: Optional[Iterable[str]]) -> bool:
    """Row-level read check: no _rperm, or _rperm intersects acl + public."""
    read_perms = document.get(READ_PERMISSION_COLUMN)
    if read_perms is None:
        return True
    allowed = set(acl or ()) | {"*"}
    return any(subject in allowed for subject in read_perms)


def _sort_key(value: Any) -> Tuple[int, Any]:
    value = _normalize(value)
    if value is _MISSING or value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, json.dumps(value, sort_keys=True, default=str))


def sort_documents(documents: List[Dict[str, Any]], order: Iterable[str]) -> List[Dict[str, Any]]:
    """Sort by an ordered key list; a leading "-" sorts descending."""
    result = list(documents)
    for key in reversed([k for k in order if k]):
        descending = key.startswith("-")
        field = key[1:] if descending else key
        result.sort(key=lambda doc: _sort_key(get_field(doc, field)), reverse=descending)
    return result


def select(
    documents: Iterable[Dict[str, Any]],
    where: Optional[Dict[str, Any]],
    options: Optional[Dict[str, Any]] = None,
) -> List[Any]:
    """Run a find over storage documents.

    Args:
        documents: Storage documents of one collection
        where: Storage-form where clause
        options: Find options (acl, sort, skip, limit, count)

    Returns:
        Matching storage documents, or [count] when options["count"] is set
    """
    options = options or {}
    found = [
        doc
        for doc in documents
        if ("acl" not in options or is_visible(doc, options["acl"])) and matches(doc, where)
    ]
    if options.get("count"):
        return [len(found)]
    if options.get("sort"):
        found = sort_documents(found, options["sort"])
    skip = int(options.get("skip") or 0)
    if skip:
        found = found[skip:]
    limit = options.get("limit")
    if limit is not None:
        found = found[: int(limit)]
    return found
