"""Condition evaluation against an opportunity snapshot.

Pure functions: no I/O, no locking, and never raise. A condition that
cannot be evaluated (unparseable number, missing field) is false.

A condition list is folded left to right. Each condition's
``logical_operator`` joins it to the *next* condition, and there is no
precedence between AND and OR: ``a OR b AND c`` evaluates as
``(a OR b) AND c``. An empty list is true.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Any

import structlog

from src.stageflow.core.clock import ensure_utc
from src.stageflow.opportunities.fields import get_field_value, is_empty_value
from src.stageflow.opportunities.schemas import Opportunity
from src.stageflow.stages.schemas import (
    AutomationCondition,
    ConditionOperator,
    LogicalOperator,
)

logger = structlog.get_logger(__name__)


def to_number(value: Any) -> float | None:
    """Parse ``value`` as a float; None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", ""))
        except ValueError:
            return None
    return None


def _to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _to_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _equals(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is None and expected is None

    if isinstance(actual, bool) or isinstance(expected, bool):
        left, right = _to_bool(actual), _to_bool(expected)
        return left is not None and left == right

    if isinstance(actual, datetime):
        other = _to_datetime(expected)
        return other is not None and other == ensure_utc(actual)

    left_num, right_num = to_number(actual), to_number(expected)
    if left_num is not None and right_num is not None:
        return left_num == right_num

    return str(actual) == str(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    if isinstance(actual, (list, tuple, set)):
        wanted = str(expected).lower()
        return any(str(item).lower() == wanted for item in actual)
    return str(expected).lower() in str(actual).lower()


def _compare(actual: Any, expected: Any, greater: bool) -> bool:
    left, right = to_number(actual), to_number(expected)
    if left is None or right is None:
        return False
    return left > right if greater else left < right


def evaluate_condition(condition: AutomationCondition, opportunity: Opportunity) -> bool:
    """Evaluate one condition; returns False instead of raising."""
    actual = get_field_value(opportunity, condition.field)
    expected = condition.value
    op = condition.operator

    try:
        if op == ConditionOperator.EQUALS:
            return _equals(actual, expected)
        if op == ConditionOperator.NOT_EQUALS:
            return not _equals(actual, expected)
        if op == ConditionOperator.GREATER_THAN:
            return _compare(actual, expected, greater=True)
        if op == ConditionOperator.LESS_THAN:
            return _compare(actual, expected, greater=False)
        if op == ConditionOperator.CONTAINS:
            return _contains(actual, expected)
        if op == ConditionOperator.NOT_CONTAINS:
            return not _contains(actual, expected)
        if op == ConditionOperator.IS_EMPTY:
            return is_empty_value(actual)
        if op == ConditionOperator.IS_NOT_EMPTY:
            return not is_empty_value(actual)
    except (TypeError, ValueError) as exc:
        logger.debug(
            "conditions.evaluation_failed",
            field=condition.field,
            operator=op.value,
            error=str(exc),
        )
        return False
    return False


def evaluate_conditions(
    conditions: Sequence[AutomationCondition], opportunity: Opportunity
) -> bool:
    """Fold a condition list left to right using each condition's join operator."""
    if not conditions:
        return True

    result = evaluate_condition(conditions[0], opportunity)
    for previous, condition in zip(conditions, conditions[1:]):
        current = evaluate_condition(condition, opportunity)
        if previous.logical_operator == LogicalOperator.OR:
            result = result or current
        else:
            result = result and current
    return result
