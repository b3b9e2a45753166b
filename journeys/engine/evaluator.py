"""Condition expression evaluator for journey branching.

Evaluation is pure: it reads only the expression and the snapshot it is
given, never the clock or the database, and never raises for data problems.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from .context import MISSING, ContactSnapshot


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not ordered")
    return float(value)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        return expected in actual
    if isinstance(actual, str):
        return str(expected) in actual
    return False


def _is_set(actual: Any) -> bool:
    if actual is MISSING or actual is None:
        return False
    if isinstance(actual, (str, list, tuple, dict, set)):
        return len(actual) > 0
    return True


# Value comparators never see MISSING; the evaluator short-circuits to False.
OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda a, b: a == b,
    "not_equals": lambda a, b: a != b,
    "greater_than": lambda a, b: _number(a) > _number(b),
    "greater_than_or_equal": lambda a, b: _number(a) >= _number(b),
    "less_than": lambda a, b: _number(a) < _number(b),
    "less_than_or_equal": lambda a, b: _number(a) <= _number(b),
    "contains": _contains,
    "not_contains": lambda a, b: not _contains(a, b),
}

PRESENCE_OPERATORS: dict[str, Callable[[Any], bool]] = {
    "is_set": _is_set,
    "is_not_set": lambda a: not _is_set(a),
}

LOGIC_OPERATORS = ("and", "or")


@dataclass(frozen=True)
class ConditionResult:
    value: bool
    missing_paths: tuple[str, ...] = ()


def explain_condition(expression: dict | None, snapshot: ContactSnapshot) -> ConditionResult:
    """Evaluate an expression and report which attribute paths were unknown.

    Leaf format::

        {"field": "tags", "operator": "contains", "value": "vip"}

    Compound format::

        {"logic": "and", "conditions": [<leaf or compound>, ...]}
    """
    missing: list[str] = []
    value = _evaluate(expression, snapshot, missing)
    return ConditionResult(value=value, missing_paths=tuple(dict.fromkeys(missing)))


def evaluate_condition(expression: dict | None, snapshot: ContactSnapshot) -> bool:
    return explain_condition(expression, snapshot).value


def _evaluate(expression: Any, snapshot: ContactSnapshot, missing: list[str]) -> bool:
    if not expression:
        return True
    if not isinstance(expression, dict):
        return False

    if "conditions" in expression:
        children = expression.get("conditions") or []
        if not isinstance(children, list):
            return False
        # Evaluate every child so all unknown paths are reported.
        results = [_evaluate(child, snapshot, missing) for child in children]
        if expression.get("logic", "and") == "or":
            return any(results)
        return all(results)

    field = expression.get("field")
    op_name = expression.get("operator", "equals")
    if not isinstance(field, str) or not field:
        return False

    actual = snapshot.lookup(field)

    if op_name in PRESENCE_OPERATORS:
        return PRESENCE_OPERATORS[op_name](actual)

    if actual is MISSING:
        missing.append(field)
        return False

    op_func = OPERATORS.get(op_name)
    if op_func is None:
        return False
    try:
        return bool(op_func(actual, expression.get("value")))
    except (TypeError, ValueError):
        return False


def validate_expression(expression: Any, path: str = "conditions") -> list[str]:
    """Return every structural problem in an expression (empty list when valid)."""
    if not isinstance(expression, dict) or not expression:
        return [f"{path}: must be a non-empty object"]

    if "conditions" in expression:
        errors: list[str] = []
        logic = expression.get("logic", "and")
        if logic not in LOGIC_OPERATORS:
            errors.append(f"{path}.logic: must be one of {', '.join(LOGIC_OPERATORS)}")
        children = expression.get("conditions")
        if not isinstance(children, list) or not children:
            errors.append(f"{path}.conditions: must be a non-empty list")
            return errors
        for index, child in enumerate(children):
            errors.extend(validate_expression(child, f"{path}.conditions[{index}]"))
        return errors

    errors = []
    field = expression.get("field")
    if not isinstance(field, str) or not field.strip():
        errors.append(f"{path}.field: required")
    op_name = expression.get("operator")
    if op_name not in OPERATORS and op_name not in PRESENCE_OPERATORS:
        errors.append(f"{path}.operator: unknown operator {op_name!r}")
    elif op_name in OPERATORS and "value" not in expression:
        errors.append(f"{path}.value: required for operator {op_name!r}")
    return errors
