"""
Include expansion helpers.

An include path such as ["post", "author"] names pointer fields to inline.
find_pointers collects every Pointer at the end of the path (descending
through arrays at any level); replace_pointers splices resolved objects into
those same dicts in place and marks them "__type": "Object", so a longer
path processed later can traverse through them.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


def find_pointers(value: Any, path: Sequence[str]) -> List[Dict[str, Any]]:
    """Pointer dicts found at `path` under `value`."""
    if isinstance(value, list):
        found: List[Dict[str, Any]] = []
        for item in value:
            found.extend(find_pointers(item, path))
        return found
    if not isinstance(value, dict):
        return []
    if not path:
        return [value] if value.get("__type") == "Pointer" else []
    child = value.get(path[0])
    if child is None:
        return []
    return find_pointers(child, path[1:])


def common_class_name(pointers: Sequence[Dict[str, Any]]) -> Optional[str]:
    """The single target class of all pointers, or None when mixed or empty."""
    class_names = {pointer.get("className") for pointer in pointers}
    if len(class_names) != 1:
        return None
    class_name = class_names.pop()
    return class_name if isinstance(class_name, str) and class_name else None


def replace_pointers(
    pointers: Sequence[Dict[str, Any]],
    resolved: Dict[str, Dict[str, Any]],
) -> int:
    """Inline resolved objects into pointer dicts.

    Returns:
        Number of pointers materialized
    """
    replaced = 0
    for pointer in pointers:
        obj = resolved.get(pointer.get("objectId"))
        if obj is None:
            continue
        pointer.update(obj)
        pointer["__type"] = "Object"
        replaced += 1
    return replaced
