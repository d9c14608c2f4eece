# nodeflow/core/nodes/conditions.py
"""Condition operators shared by condition nodes, guarded edges and triggers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from nodeflow.core.models.graph import ConditionOperator, ConditionSpec
from nodeflow.core.nodes.context import MISSING, Scope


@dataclass(frozen=True, slots=True)
class ConditionResult:
    matched: bool
    actual: Any

    def to_json(self, spec: ConditionSpec) -> dict[str, Any]:
        return {
            'condition': self.matched,
            'field': spec.field,
            'operator': spec.operator.value,
            'expected': spec.value,
            'actual': None if self.actual is MISSING else self.actual,
        }


def evaluate(spec: ConditionSpec, scope: Scope) -> ConditionResult:
    actual = scope.resolve(spec.field)
    expected = spec.value

    match spec.operator:
        case ConditionOperator.EQUALS:
            matched = actual is not MISSING and _loose_equals(actual, expected)
        case ConditionOperator.NOT_EQUALS:
            matched = actual is MISSING or not _loose_equals(actual, expected)
        case ConditionOperator.GT | ConditionOperator.LT | ConditionOperator.GTE | ConditionOperator.LTE:
            matched = _compare(spec.operator, actual, expected)
        case ConditionOperator.CONTAINS:
            matched = _contains(actual, expected)
        case ConditionOperator.STARTS_WITH:
            matched = isinstance(actual, str) and isinstance(expected, str) and actual.startswith(expected)
        case ConditionOperator.ENDS_WITH:
            matched = isinstance(actual, str) and isinstance(expected, str) and actual.endswith(expected)
        case ConditionOperator.IN:
            matched = _is_member(actual, expected)
        case ConditionOperator.NOT_IN:
            matched = not _is_member(actual, expected)
        case ConditionOperator.IS_NULL:
            matched = actual is MISSING or actual is None
        case ConditionOperator.IS_NOT_NULL:
            matched = actual is not MISSING and actual is not None
        case ConditionOperator.CHANGED:
            matched = _changed(scope, spec.field, actual)
        case ConditionOperator.CHANGED_TO:
            matched = _changed(scope, spec.field, actual) and _loose_equals(actual, expected)
        case ConditionOperator.CHANGED_FROM:
            previous = scope.previous_value(spec.field)
            matched = _changed(scope, spec.field, actual) and _loose_equals(previous, expected)

    return ConditionResult(matched=matched, actual=actual)


def evaluate_all(specs: list[ConditionSpec] | tuple[ConditionSpec, ...], scope: Scope) -> bool:
    return all(evaluate(spec, scope).matched for spec in specs)


def _to_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _loose_equals(actual: Any, expected: Any) -> bool:
    """Equality that also matches numbers against numeric strings ("5" == 5)."""
    if actual == expected:
        return True
    if isinstance(actual, str) != isinstance(expected, str):
        left, right = _to_float(actual), _to_float(expected)
        return left is not None and right is not None and left == right
    return False


def _compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    left, right = _to_float(actual), _to_float(expected)
    if left is None or right is None:
        return False
    match operator:
        case ConditionOperator.GT:
            return left > right
        case ConditionOperator.LT:
            return left < right
        case ConditionOperator.GTE:
            return left >= right
        case _:
            return left <= right


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    if isinstance(actual, (list, tuple)):
        return any(_loose_equals(item, expected) for item in actual)
    return False


def _is_member(actual: Any, expected: Any) -> bool:
    if actual is MISSING or not isinstance(expected, (list, tuple)):
        return False
    return any(_loose_equals(actual, item) for item in expected)


def _changed(scope: Scope, field: str, actual: Any) -> bool:
    previous = scope.previous_value(field)
    if previous is MISSING:
        return False
    return previous != actual
