"""
Link filter conditions.

A condition is a JSON-like mapping evaluated against an event payload:

    {"field": "issue.labels.0.name", "operator": "equals", "value": "bug"}

    {"operator": "and", "conditions": [
        {"field": "action", "value": "opened"},
        {"operator": "not", "condition": {"field": "draft", "operator": "exists"}},
    ]}

Composite operators: ``and`` (default when no operator), ``or``, ``not``.
Leaf operators: equals (default), not_equals, contains, not_contains,
starts_with, ends_with, regex, greater_than, less_than, greater_equal,
less_equal, exists, not_exists.

Equality compares text renderings, so ``"42"`` equals ``42``. A malformed
condition raises ConditionError; the resolver turns that into "link does
not fire".
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any

from pyreflex.pipeline.paths import MISSING, get_path

__all__ = ["ConditionError", "evaluate_condition", "as_text", "as_number"]


class ConditionError(ValueError):
    """The condition itself is invalid (unknown operator, bad regex, wrong shape)."""

    pass


def as_text(value: Any) -> str | None:
    if value is None or value is MISSING:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def as_number(value: Any) -> float | None:
    if value is None or value is MISSING or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual is MISSING:
        actual = None
    if actual is None or expected is None:
        return actual is None and expected is None
    left, right = as_number(actual), as_number(expected)
    if left is not None and right is not None:
        return left == right
    return as_text(actual) == as_text(expected)


def _text_op(test: Callable[[str, str], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        left, right = as_text(actual), as_text(expected)
        if left is None or right is None:
            return False
        return test(left, right)

    return op


def _regex(actual: Any, expected: Any) -> bool:
    left, pattern = as_text(actual), as_text(expected)
    if left is None or pattern is None:
        return False
    try:
        return re.fullmatch(pattern, left) is not None
    except re.error as e:
        raise ConditionError(f"Invalid regex pattern {pattern!r}: {e}") from e


def _compare(test: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def op(actual: Any, expected: Any) -> bool:
        left, right = as_number(actual), as_number(expected)
        if left is not None and right is not None:
            return test(left, right)
        left_text, right_text = as_text(actual), as_text(expected)
        if left_text is None or right_text is None:
            return False
        return test(left_text, right_text)

    return op


_contains = _text_op(lambda a, e: e in a)

_LEAF_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": lambda a, e: not _equals(a, e),
    "contains": _contains,
    "not_contains": lambda a, e: not _contains(a, e),
    "starts_with": _text_op(str.startswith),
    "ends_with": _text_op(str.endswith),
    "regex": _regex,
    "greater_than": _compare(lambda a, e: a > e),
    "less_than": _compare(lambda a, e: a < e),
    "greater_equal": _compare(lambda a, e: a >= e),
    "less_equal": _compare(lambda a, e: a <= e),
    "exists": lambda a, _: a is not MISSING and a is not None,
    "not_exists": lambda a, _: a is MISSING or a is None,
}


def evaluate_condition(data: Mapping[str, Any], condition: Mapping[str, Any] | None) -> bool:
    """
    Evaluate ``condition`` against ``data``.

    An empty or missing condition is true.

    Raises:
        ConditionError: If the condition is malformed
    """
    if not condition:
        return True
    if not isinstance(condition, Mapping):
        raise ConditionError(f"Condition must be a mapping, got {type(condition).__name__}")

    operator = str(condition.get("operator") or "").lower()

    if operator in ("and", "or") or (not operator and "conditions" in condition):
        children = condition.get("conditions") or []
        if not isinstance(children, list):
            raise ConditionError("'conditions' must be a list")
        if operator == "or":
            return any(evaluate_condition(data, child) for child in children)
        return all(evaluate_condition(data, child) for child in children)

    if operator == "not":
        child = condition.get("condition")
        if not isinstance(child, Mapping):
            raise ConditionError("'not' requires a nested 'condition'")
        return not evaluate_condition(data, child)

    field = condition.get("field")
    if not isinstance(field, str) or not field:
        raise ConditionError(f"Leaf condition requires a 'field': {dict(condition)}")

    test = _LEAF_OPERATORS.get(operator or "equals")
    if test is None:
        raise ConditionError(f"Unknown condition operator: {operator}")

    return test(get_path(data, field), condition.get("value"))
