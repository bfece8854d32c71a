"""
Query module for Docbase.

This module provides the find pipeline, including:
- Option parsing (keys, count, skip, limit, order, include, redirect)
- ACL and session scoping
- Desugaring of $select / $dontSelect / $inQuery / $notInQuery
- Include expansion of pointer paths

Invariants:
    - Nested queries run sequentially with the caller's Auth
    - Desugaring is bounded in depth and in number of rewrites

How to change safely:
    - New options must be added to parse_options, or they are rejected
"""

from .engine import RestQuery
from .include import find_pointers, replace_pointers
from .options import ALWAYS_SELECTED_KEYS, QueryOptions, normalize_include, parse_options
from .where import QUERY_OPERATORS, check_depth, find_query_operator

__all__ = [
    # Engine
    "RestQuery",
    # Options
    "QueryOptions",
    "parse_options",
    "normalize_include",
    "ALWAYS_SELECTED_KEYS",
    # Where trees
    "QUERY_OPERATORS",
    "check_depth",
    "find_query_operator",
    # Includes
    "find_pointers",
    "replace_pointers",
]
