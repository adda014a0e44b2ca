"""
Condition evaluator.

``evaluate(condition, ctx)`` is a pure function of the condition and the
context snapshot. It never raises: unknown operators, missing attributes and
values that cannot be compared all evaluate to False.
"""

import logging
import re
from typing import Any, List, Mapping, Optional, Union

from lifecycle_engine.conditions.base import Condition, NUMERIC_OPERATORS, Operator
from lifecycle_engine.conditions.context import UserContextSnapshot
from lifecycle_engine.conditions.fields import FieldRegistry, field_registry
from lifecycle_engine.conditions.trace import EvaluationTrace

logger = logging.getLogger(__name__)


_NUMBER_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")

Scalar = Union[bool, int, float, str]


def coerce_value(text: Any) -> Scalar:
    """
    Coerce a stored condition value.

    ``"true"``/``"false"`` become booleans, clean numeric text becomes an
    int or float, anything else stays text.
    """
    if isinstance(text, (bool, int, float)):
        return text
    text = "" if text is None else str(text)
    if text == "true":
        return True
    if text == "false":
        return False
    if _NUMBER_RE.match(text):
        stripped = text.strip()
        if any(ch in stripped for ch in ".eE"):
            return float(stripped)
        return int(stripped)
    return text


def as_number(value: Any) -> Optional[float]:
    """Numeric view of a value; booleans and non-numeric text are not numbers."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str) and _NUMBER_RE.match(value):
        return float(value.strip())
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _as_list(value: Any) -> Optional[List[str]]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_text(item).strip() for item in value]
    return None


def to_text(value: Any) -> str:
    """String form of an attribute as used by IN/NOT_IN and text equality."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    items = _as_list(value)
    if items is not None:
        return ",".join(items)
    return str(value)


def loose_equals(actual: Any, expected_text: str) -> bool:
    """
    Cross-type equality between an attribute and a stored text value.

    Booleans compare with ``true``/``false`` and 1/0, numbers compare
    numerically with numeric text, everything else compares as text.
    A missing attribute equals nothing.
    """
    if actual is None:
        return False
    expected = coerce_value(expected_text)

    if isinstance(actual, bool) or isinstance(expected, bool):
        left, right = _as_bool(actual), _as_bool(expected)
        return left is not None and right is not None and left == right

    left_num, right_num = as_number(actual), as_number(expected)
    if left_num is not None and right_num is not None:
        return left_num == right_num

    return to_text(actual) == str(expected_text)


def _in_list(actual: Any, target_text: str) -> bool:
    if actual is None:
        return False
    targets = {t.strip() for t in str(target_text).split(",") if t.strip()}
    if to_text(actual).strip() in targets:
        return True
    items = _as_list(actual)
    return bool(items) and any(item in targets for item in items)


def _compare(op: Operator, actual: Any, expected_text: str) -> bool:
    if op is Operator.EXISTS:
        return actual is not None
    if op is Operator.NOT_EXISTS:
        return actual is None
    if op is Operator.EQUALS:
        return loose_equals(actual, expected_text)
    if op is Operator.NOT_EQUALS:
        return not loose_equals(actual, expected_text)
    if op is Operator.IN:
        return _in_list(actual, expected_text)
    if op is Operator.NOT_IN:
        return not _in_list(actual, expected_text)

    if op in NUMERIC_OPERATORS:
        left = as_number(actual)
        right = coerce_value(expected_text)
        right = None if isinstance(right, bool) else as_number(right)
        if left is None or right is None:
            return False
        if op is Operator.GT:
            return left > right
        if op is Operator.GTE:
            return left >= right
        if op is Operator.LT:
            return left < right
        return left <= right

    return False


def _as_snapshot(ctx: Any) -> UserContextSnapshot:
    if isinstance(ctx, UserContextSnapshot):
        return ctx
    if isinstance(ctx, Mapping):
        return UserContextSnapshot.from_mapping(ctx)
    raise TypeError(f"unsupported context type {type(ctx).__name__}")


def evaluate(
    condition: Union[Condition, Mapping[str, Any]],
    ctx: Union[UserContextSnapshot, Mapping[str, Any]],
    trace: Optional[EvaluationTrace] = None,
    registry: Optional[FieldRegistry] = None,
) -> bool:
    """
    Evaluate one condition against a context snapshot.

    Args:
        condition: Condition or stored condition row
        ctx: Snapshot (a plain mapping is converted)
        trace: Optional trace receiving a ConditionEntry
        registry: Field registry (defaults to the global one)

    Returns:
        Whether the condition holds; False on any invalid input
    """
    registry = registry or field_registry
    actual: Any = None
    result = False
    try:
        if not isinstance(condition, Condition):
            condition = Condition.from_dict(condition)
        op = condition.op
        if op is None:
            logger.debug("Unknown operator '%s' on field '%s'", condition.operator, condition.field)
        else:
            actual = registry.resolve(condition.field, _as_snapshot(ctx))
            result = _compare(op, actual, condition.value)
    except Exception:  # evaluation degrades to False, never propagates
        logger.debug("Condition evaluation failed: %r", condition, exc_info=True)
        result = False

    if trace is not None and isinstance(condition, Condition):
        trace.record(
            field_name=condition.field,
            operator=condition.operator,
            expected=condition.value,
            actual=actual,
            result=result,
            group_id=condition.group_id,
        )
    return result


__all__ = [
    "coerce_value",
    "as_number",
    "to_text",
    "loose_equals",
    "evaluate",
]
