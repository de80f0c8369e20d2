"""
Predicate evaluation over an execution's variable bag.

A condition is a mapping {field, operator, value}. field is a dotted path
into the variables ("user.firstName"); a missing path resolves to UNDEFINED.
"""
from __future__ import annotations

import math
from typing import Any, Iterable, List, Mapping, Optional

OPERATORS = frozenset(
    {"equals", "not_equals", "greater_than", "less_than", "contains", "not_contains"}
)


class _Undefined:
    __slots__ = ()

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def resolve_path(path: Optional[str], variables: Optional[Mapping[str, Any]]) -> Any:
    if not path or variables is None:
        return UNDEFINED

    current: Any = variables
    for key in str(path).split("."):
        if isinstance(current, Mapping) and key in current:
            current = current[key]
        elif isinstance(current, list) and key.isdigit() and int(key) < len(current):
            current = current[int(key)]
        else:
            return UNDEFINED
    return current


def _to_number(value: Any) -> Optional[float]:
    if value is UNDEFINED or value is None or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(n):
        return None
    return n


def _to_text(value: Any) -> str:
    if value is UNDEFINED or value is None:
        return ""
    if isinstance(value, bool):
        # Matches the lowercase form conditions are authored with.
        return "true" if value else "false"
    return str(value)


def evaluate(condition: Mapping[str, Any], variables: Optional[Mapping[str, Any]]) -> bool:
    operator = condition.get("operator")
    if operator not in OPERATORS:
        return False

    actual = resolve_path(condition.get("field"), variables)
    expected = condition.get("value")

    if operator == "equals":
        return actual is not UNDEFINED and actual == expected
    if operator == "not_equals":
        return actual is UNDEFINED or actual != expected

    if operator in ("greater_than", "less_than"):
        a = _to_number(actual)
        b = _to_number(expected)
        if a is None or b is None:
            return False
        return a > b if operator == "greater_than" else a < b

    contained = _to_text(expected) in _to_text(actual)
    return contained if operator == "contains" else not contained


def _or_groups(conditions: List[Mapping[str, Any]]) -> List[List[Mapping[str, Any]]]:
    # An entry carrying logic == "OR" opens a new group; AND binds tighter.
    groups: List[List[Mapping[str, Any]]] = [[]]
    for i, condition in enumerate(conditions):
        if i > 0 and str(condition.get("logic") or "AND").upper() == "OR":
            groups.append([])
        groups[-1].append(condition)
    return groups


def evaluate_all(
    conditions: Optional[Iterable[Mapping[str, Any]]],
    variables: Optional[Mapping[str, Any]],
    *,
    or_groups: bool = False,
) -> bool:
    """
    All entries must hold (AND). `logic: "OR"` markers are ignored unless
    or_groups=True, in which case any fully-satisfied group is enough.
    An empty/absent list is satisfied.
    """
    items = list(conditions or [])
    if not items:
        return True

    if not or_groups:
        return all(evaluate(c, variables) for c in items)

    return any(all(evaluate(c, variables) for c in group) for group in _or_groups(items))


def evaluate_any(
    conditions: Optional[Iterable[Mapping[str, Any]]],
    variables: Optional[Mapping[str, Any]],
) -> bool:
    return any(evaluate(c, variables) for c in (conditions or []))


def assign_path(variables: Optional[Mapping[str, Any]], path: str, value: Any) -> dict:
    """Copy of variables with value stored at the dotted path (intermediate dicts created)."""
    result = dict(variables or {})
    keys = str(path).split(".")
    node = result
    for key in keys[:-1]:
        child = node.get(key)
        child = dict(child) if isinstance(child, Mapping) else {}
        node[key] = child
        node = child
    node[keys[-1]] = value
    return result
