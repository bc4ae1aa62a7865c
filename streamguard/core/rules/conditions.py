"""
Condition trees.

A rule's ``conditions_json`` looks like::

    {"groups": [
        {"conditions": [
            {"field": "concurrent_streams", "operator": "gt", "value": 3},
            {"field": "unique_ips_in_window", "operator": "gte", "value": 5,
             "params": {"window_hours": 12}}
        ]}
    ]}

Groups are OR-ed, conditions inside a group are AND-ed. The JSON is parsed once
into frozen dataclasses; unknown fields or operators raise RuleConfigError so
a broken rule is rejected when it is loaded, not at match time.
"""
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field as dc_field
from typing import Any, Callable, Dict, FrozenSet, Tuple

from streamguard.core.rules.fields import KNOWN_FIELDS
from streamguard.errors import RuleConfigError

LIST_OPERATORS = ("in", "not_in")


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any
    params: Dict[str, Any] = dc_field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> dict:
        out = {"field": self.field, "operator": self.operator, "value": self.value}
        if self.params:
            out["params"] = dict(self.params)
        return out


@dataclass(frozen=True)
class ConditionGroup:
    conditions: Tuple[Condition, ...]

    def to_dict(self) -> dict:
        return {"conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class RuleConditions:
    groups: Tuple[ConditionGroup, ...]

    def to_dict(self) -> dict:
        return {"groups": [g.to_dict() for g in self.groups]}

    def referenced_fields(self) -> FrozenSet[str]:
        return frozenset(c.field for g in self.groups for c in g.conditions)


# -------------------------------------------------------------------
# Operators
# -------------------------------------------------------------------

def _norm(v: Any) -> Any:
    if isinstance(v, str):
        return v.strip().lower()
    return v


def _as_number(v: Any):
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return v
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _numeric(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(actual, expected):
        a, b = _as_number(actual), _as_number(expected)
        if a is None or b is None:
            return False
        if isinstance(a, float) and math.isnan(a):
            return False
        return op(a, b)
    return compare


def _eq(actual, expected) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return bool(actual) == bool(expected)
    a, b = _as_number(actual), _as_number(expected)
    if a is not None and b is not None and not isinstance(actual, str):
        return a == b
    return str(_norm(actual)) == str(_norm(expected))


def _in(actual, expected) -> bool:
    return any(_eq(actual, e) for e in expected)


def _contains(actual, expected) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(_eq(a, expected) for a in actual)
    return str(_norm(expected)) in str(_norm(actual))


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": _eq,
    "neq": lambda a, e: not _eq(a, e),
    "gt": _numeric(lambda a, b: a > b),
    "gte": _numeric(lambda a, b: a >= b),
    "lt": _numeric(lambda a, b: a < b),
    "lte": _numeric(lambda a, b: a <= b),
    "in": _in,
    "not_in": lambda a, e: not _in(a, e),
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
}


def compare(operator: str, actual: Any, expected: Any) -> bool:
    """
    None = pas de donnée = pas de match, quel que soit l'opérateur
    (neq / not_in compris).
    """
    if actual is None:
        return False
    fn = OPERATORS.get(operator)
    if fn is None:
        raise RuleConfigError(f"Unknown operator: {operator}")
    return fn(actual, expected)


# -------------------------------------------------------------------
# Parsing
# -------------------------------------------------------------------

def parse_condition(raw: Any) -> Condition:
    if not isinstance(raw, dict):
        raise RuleConfigError(f"Condition must be an object, got {type(raw).__name__}")

    field_name = raw.get("field")
    operator = raw.get("operator")
    if field_name not in KNOWN_FIELDS:
        raise RuleConfigError(f"Unknown condition field: {field_name}")
    if operator not in OPERATORS:
        raise RuleConfigError(f"Unknown operator: {operator}")
    if "value" not in raw:
        raise RuleConfigError(f"Condition on {field_name} has no value")

    value = raw["value"]
    if operator in LIST_OPERATORS:
        if isinstance(value, (str, int, float)):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise RuleConfigError(f"Operator {operator} expects a list value ({field_name})")
        value = tuple(value)

    params = raw.get("params") or {}
    if not isinstance(params, dict):
        raise RuleConfigError(f"params must be an object ({field_name})")

    return Condition(field=field_name, operator=operator, value=value, params=dict(params))


def parse_conditions(raw: Any) -> RuleConditions:
    """Accepts the decoded dict or the raw JSON text."""
    if raw is None or raw == "":
        return RuleConditions(groups=())
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise RuleConfigError(f"Invalid conditions JSON: {e}") from e
    if not isinstance(raw, dict):
        raise RuleConfigError("Conditions must be an object with a 'groups' list")

    groups_raw = raw.get("groups") or []
    if not isinstance(groups_raw, list):
        raise RuleConfigError("'groups' must be a list")

    groups = []
    for g in groups_raw:
        if not isinstance(g, dict) or not isinstance(g.get("conditions", []), list):
            raise RuleConfigError("Each group must be an object with a 'conditions' list")
        groups.append(ConditionGroup(conditions=tuple(parse_condition(c) for c in g.get("conditions") or [])))
    return RuleConditions(groups=tuple(groups))
