"""
Bounded-depth traversal of where trees.

The query engine rewrites the high-level query operators

    $select      -> $in   (values of a key from a nested query)
    $dontSelect  -> $nin
    $inQuery     -> $in   (pointers to rows of a nested query)
    $notInQuery  -> $nin

one occurrence at a time. This module locates the next occurrence and
checks operand shapes; it never runs queries itself.

Invariants:
    - Traversal is iterative and depth-bounded; a tree nested deeper than
      the limit fails InvalidQueryError before anything is rewritten
    - Occurrences are found in pre-order, depth-first
    - Operators are only looked up in query positions: clause dicts reached
      through $and / $or / $nor and the condition dict of each field.
      Literal operands ($in lists, equality values) are never entered, so
      stored values spliced in by merge_values stay opaque
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..errors import InvalidQueryError

SELECT = "$select"
DONT_SELECT = "$dontSelect"
IN_QUERY = "$inQuery"
NOT_IN_QUERY = "$notInQuery"

QUERY_OPERATORS = (SELECT, DONT_SELECT, IN_QUERY, NOT_IN_QUERY)

# Keys whose value is a list of where clauses
LOGICAL_OPERATORS = ("$and", "$or", "$nor")

# Operator -> primitive it desugars to
REPLACEMENTS = {
    SELECT: "$in",
    DONT_SELECT: "$nin",
    IN_QUERY: "$in",
    NOT_IN_QUERY: "$nin",
}


@dataclass
class OperatorSite:
    """One operator occurrence: the dict holding it and the operator key."""

    node: Dict[str, Any]
    operator: str

    @property
    def operand(self) -> Any:
        return self.node[self.operator]

    @property
    def replacement(self) -> str:
        return REPLACEMENTS[self.operator]


def _walk(root: Any, max_depth: int):
    """Yield (node, depth) in pre-order, bounded by max_depth."""
    stack: List[Tuple[Any, int]] = [(root, 0)]
    while stack:
        node, depth = stack.pop()
        if depth > max_depth:
            raise InvalidQueryError(f"where clause is nested deeper than {max_depth} levels")
        yield node, depth
        if isinstance(node, dict):
            children = list(node.values())
        elif isinstance(node, list):
            children = node
        else:
            continue
        for child in reversed(children):
            if isinstance(child, (dict, list)):
                stack.append((child, depth + 1))


def _walk_query_positions(where: Any, max_depth: int):
    """Yield clause and field-condition dicts in pre-order, bounded by max_depth.

    Depth is counted the way _walk counts it: a clause inside a $and list
    sits two levels below its parent clause, a condition one level below.
    """
    # (node, depth, is_clause); conditions are leaves
    stack: List[Tuple[Any, int, bool]] = [(where, 0, True)]
    while stack:
        node, depth, is_clause = stack.pop()
        if depth > max_depth:
            raise InvalidQueryError(f"where clause is nested deeper than {max_depth} levels")
        if not isinstance(node, dict):
            continue
        yield node
        if not is_clause:
            continue
        children: List[Tuple[Any, int, bool]] = []
        for key, value in node.items():
            if key in LOGICAL_OPERATORS:
                if isinstance(value, list):
                    children.extend((clause, depth + 2, True) for clause in value)
            elif not key.startswith("$") and isinstance(value, dict):
                children.append((value, depth + 1, False))
        stack.extend(reversed(children))


def check_depth(where: Any, max_depth: int) -> None:
    """Raise InvalidQueryError if the tree is nested deeper than max_depth."""
    for _ in _walk(where, max_depth):
        pass


def find_query_operator(where: Any, max_depth: int) -> Optional[OperatorSite]:
    """First query operator occurrence in pre-order, or None."""
    for node in _walk_query_positions(where, max_depth):
        for key in node:
            if key in QUERY_OPERATORS:
                return OperatorSite(node, key)
    return None


def count_query_operators(where: Any, max_depth: int) -> int:
    """Number of operator occurrences left to desugar in this tree.

    Operators inside a nested query's where are not counted; the nested
    query desugars them itself.
    """
    count = 0
    for node in _walk_query_positions(where, max_depth):
        count += sum(1 for key in node if key in QUERY_OPERATORS)
    return count


def parse_select_operand(operator: str, operand: Any) -> Tuple[str, Dict[str, Any], str]:
    """Validate a $select / $dontSelect operand.

    Returns:
        (className, where, key) of the nested query

    Raises:
        InvalidQueryError: Unless the operand is exactly {query, key} with
            query naming a className
    """
    if (
        not isinstance(operand, dict)
        or set(operand) != {"query", "key"}
        or not isinstance(operand["key"], str)
    ):
        raise InvalidQueryError(f"improper usage of {operator}")
    query = operand["query"]
    if not isinstance(query, dict) or not isinstance(query.get("className"), str):
        raise InvalidQueryError(f"improper usage of {operator}")
    where = query.get("where")
    if where is None:
        where = {}
    if not isinstance(where, dict):
        raise InvalidQueryError(f"improper usage of {operator}")
    return query["className"], where, operand["key"]


def parse_in_query_operand(operator: str, operand: Any) -> Tuple[str, Dict[str, Any]]:
    """Validate an $inQuery / $notInQuery operand.

    Returns:
        (className, where) of the nested query

    Raises:
        InvalidQueryError: Unless the operand is exactly {where, className}
    """
    if (
        not isinstance(operand, dict)
        or set(operand) != {"where", "className"}
        or not isinstance(operand["className"], str)
        or not isinstance(operand["where"], dict)
    ):
        raise InvalidQueryError(f"improper usage of {operator}")
    return operand["className"], operand["where"]


def merge_values(site: OperatorSite, values: List[Any]) -> None:
    """Replace the operator with its primitive, appending to an existing list.

    Raises:
        InvalidQueryError: If the existing primitive operand is not a list
    """
    target = site.replacement
    existing = site.node.get(target)
    if existing is not None and not isinstance(existing, list):
        raise InvalidQueryError(f"{target} requires a list when combined with {site.operator}")
    del site.node[site.operator]
    site.node[target] = (existing or []) + values
