"""Step condition evaluation over an enrollment's data."""

from __future__ import annotations

from typing import Any

from comms.journeys.models import ConditionOperator, StepCondition

_MISSING = object()


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dot path through nested mappings; missing keys yield ``None``."""
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` into a copy of ``base``; nested dicts merge recursively."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _compare(actual: Any, expected: Any, op: ConditionOperator) -> bool:
    if actual is None or expected is None:
        return False
    try:
        if op == ConditionOperator.GT:
            return actual > expected
        if op == ConditionOperator.GTE:
            return actual >= expected
        if op == ConditionOperator.LT:
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def evaluate_condition(condition: StepCondition, data: dict[str, Any]) -> bool:
    actual = resolve_path(data, condition.field)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EQUALS:
        return actual == expected
    if op == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if op == ConditionOperator.CONTAINS:
        if isinstance(actual, (str, list, tuple, set, dict)):
            try:
                return expected in actual
            except TypeError:
                return False
        return False
    if op == ConditionOperator.IN:
        return isinstance(expected, (list, tuple, set)) and actual in expected
    if op == ConditionOperator.NOT_IN:
        return isinstance(expected, (list, tuple, set)) and actual not in expected
    if op == ConditionOperator.EXISTS:
        wanted = True if expected is None else bool(expected)
        return (actual is not None) == wanted
    return _compare(actual, expected, op)


def conditions_met(conditions: list[StepCondition], data: dict[str, Any]) -> bool:
    """All conditions must hold; an empty list always passes."""
    return all(evaluate_condition(c, data) for c in conditions)
