"""
Query option parsing.

Accepted options (wire names):
    keys                      "a,b" or ["a", "b"]; objectId, createdAt and
                              updatedAt are always appended
    count                     true, 1, "1" or "true" to request a total
                              count; false, 0, "0", "false" or "" to skip it
    skip, limit               non-negative integers
    order                     "a,-b" or ["a", "-b"]
    include                   "user.session,name.friend" or a list
    redirectClassNameForKey   field whose target class replaces the query's

Any other key is rejected with InvalidJSONError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from ..errors import InvalidJSONError

ALWAYS_SELECTED_KEYS = ("objectId", "createdAt", "updatedAt")

# Wire strings accepted for boolean options
TRUE_STRINGS = ("1", "true")
FALSE_STRINGS = ("0", "false", "")


def _split(name: str, value: Any) -> List[str]:
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        parts = list(value)
    else:
        raise InvalidJSONError(f"bad option value for {name}: {value!r}")
    return [part.strip() for part in parts if part.strip()]


def _non_negative_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidJSONError(f"bad option value for {name}: {value!r}")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidJSONError(f"bad option value for {name}: {value!r}")
    if number < 0:
        raise InvalidJSONError(f"bad option value for {name}: {value!r}")
    return number


def _flag(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str) and value.strip().lower() in TRUE_STRINGS + FALSE_STRINGS:
        return value.strip().lower() in TRUE_STRINGS
    raise InvalidJSONError(f"bad option value for {name}: {value!r}")


def normalize_include(paths: Iterable[str]) -> List[str]:
    """Explode include paths into every prefix, sorted so ancestors come first.

    Example:
        >>> normalize_include(["user.session", "name.friend"])
        ['name', 'name.friend', 'user', 'user.session']
    """
    exploded = set()
    for path in paths:
        parts = [part for part in path.split(".") if part]
        for length in range(1, len(parts) + 1):
            exploded.add(".".join(parts[:length]))
    return sorted(exploded)


@dataclass
class QueryOptions:
    """Parsed query options.

    Attributes:
        keys: Projection (empty means all fields)
        count: Whether to return a total count
        skip: Rows to skip
        limit: Maximum rows to return
        order: Sort keys, "-" prefix for descending
        include: Normalized include paths, each split into segments
        redirect_class_name_for_key: Field whose target class is queried
    """

    keys: List[str] = field(default_factory=list)
    count: bool = False
    skip: Optional[int] = None
    limit: Optional[int] = None
    order: List[str] = field(default_factory=list)
    include: List[List[str]] = field(default_factory=list)
    redirect_class_name_for_key: Optional[str] = None

    def find_options(self) -> Dict[str, Any]:
        """Storage find options for pagination and sorting."""
        options: Dict[str, Any] = {}
        if self.skip is not None:
            options["skip"] = self.skip
        if self.limit is not None:
            options["limit"] = self.limit
        if self.order:
            options["sort"] = list(self.order)
        return options


def parse_options(options: Optional[Mapping[str, Any]]) -> QueryOptions:
    """Parse wire query options.

    Raises:
        InvalidJSONError: On an unknown option or a malformed value
    """
    parsed = QueryOptions()
    for name, value in (options or {}).items():
        if name == "keys":
            keys = _split(name, value)
            parsed.keys = keys + [k for k in ALWAYS_SELECTED_KEYS if k not in keys]
        elif name == "count":
            parsed.count = _flag(name, value)
        elif name == "skip":
            parsed.skip = _non_negative_int(name, value)
        elif name == "limit":
            parsed.limit = _non_negative_int(name, value)
        elif name == "order":
            parsed.order = _split(name, value)
        elif name == "include":
            parsed.include = [path.split(".") for path in normalize_include(_split(name, value))]
        elif name == "redirectClassNameForKey":
            if not isinstance(value, str) or not value:
                raise InvalidJSONError(f"bad option value for {name}: {value!r}")
            parsed.redirect_class_name_for_key = value
        else:
            raise InvalidJSONError(f"bad option: {name}")
    return parsed
