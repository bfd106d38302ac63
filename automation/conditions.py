"""Condition evaluator -- ANDs field/operator/value tests against one entity.

All coercion rules live here:

* A field is missing when its path is malformed or unknown, or its value is
  None. Every operator except is_empty / is_not_empty is false on a missing
  field.
* Equality is strict. Booleans only equal booleans, ints and floats compare
  numerically, anything else needs the same type.
* contains / not_contains: substring for strings, membership for lists.
* starts_with / ends_with: strings only.
* greater_than / less_than: numbers with numbers, strings with strings,
  datetimes with datetimes (an ISO-8601 string value is parsed when the
  field holds a datetime).
* is_empty: missing, "", [] or {}.
* in_list / not_in_list: the value must be a list. A list field (e.g. tags)
  tests for overlap.
* Unknown operators are false.

evaluate() never raises.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from core.clock import ensure_utc
from core.models.automations import Condition
from crm.models import MISSING, EntityBase

logger = logging.getLogger(__name__)


def evaluate(conditions: Iterable[Condition], entity: EntityBase) -> bool:
    """True when every condition holds. An empty list always matches."""
    return all(evaluate_one(c, entity) for c in conditions)


def evaluate_one(condition: Condition, entity: EntityBase) -> bool:
    try:
        field_value = entity.get_path(condition.field)
    except Exception:
        logger.exception("Could not resolve field %r", condition.field)
        return False
    return check(condition.operator, field_value, condition.value)


def check(operator: str, field_value: Any, value: Any) -> bool:
    """Apply one operator to an already-resolved field value."""
    missing = field_value is MISSING or field_value is None

    if operator == "is_empty":
        return _is_empty(field_value, missing)
    if operator == "is_not_empty":
        return not _is_empty(field_value, missing)

    if missing:
        return False

    test = _OPERATORS.get(operator)
    if test is None:
        logger.warning("Unknown condition operator %r", operator)
        return False
    try:
        return test(field_value, value)
    except (TypeError, ValueError):
        return False


def _is_empty(field_value: Any, missing: bool) -> bool:
    if missing:
        return True
    return isinstance(field_value, (str, list, dict)) and len(field_value) == 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if isinstance(left, datetime) and isinstance(right, str):
        parsed = _parse_datetime(right)
        return parsed is not None and ensure_utc(left) == parsed
    return type(left) is type(right) and left == right


def _equals(field_value: Any, value: Any) -> bool:
    return _strict_equals(field_value, value)


def _not_equals(field_value: Any, value: Any) -> bool:
    return not _strict_equals(field_value, value)


def _contains(field_value: Any, value: Any) -> bool:
    if isinstance(field_value, str):
        return isinstance(value, str) and value in field_value
    if isinstance(field_value, list):
        return any(_strict_equals(item, value) for item in field_value)
    return False


def _not_contains(field_value: Any, value: Any) -> bool:
    if not isinstance(field_value, (str, list)):
        return False
    return not _contains(field_value, value)


def _starts_with(field_value: Any, value: Any) -> bool:
    return isinstance(field_value, str) and isinstance(value, str) and field_value.startswith(value)


def _ends_with(field_value: Any, value: Any) -> bool:
    return isinstance(field_value, str) and isinstance(value, str) and field_value.endswith(value)


def _comparable(field_value: Any, value: Any) -> tuple[Any, Any] | None:
    if _is_number(field_value) and _is_number(value):
        return field_value, value
    if isinstance(field_value, datetime):
        other = _parse_datetime(value) if isinstance(value, str) else None
        if other is None:
            return None
        return ensure_utc(field_value), other
    if isinstance(field_value, str) and isinstance(value, str):
        return field_value, value
    return None


def _greater_than(field_value: Any, value: Any) -> bool:
    pair = _comparable(field_value, value)
    return pair is not None and pair[0] > pair[1]


def _less_than(field_value: Any, value: Any) -> bool:
    pair = _comparable(field_value, value)
    return pair is not None and pair[0] < pair[1]


def _in_list(field_value: Any, value: Any) -> bool:
    if not isinstance(value, list):
        return False
    if isinstance(field_value, list):
        return any(_strict_equals(item, candidate) for item in field_value for candidate in value)
    return any(_strict_equals(field_value, candidate) for candidate in value)


def _not_in_list(field_value: Any, value: Any) -> bool:
    if not isinstance(value, list):
        return False
    return not _in_list(field_value, value)


def _parse_datetime(text: str) -> datetime | None:
    try:
        return ensure_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": _equals,
    "not_equals": _not_equals,
    "contains": _contains,
    "not_contains": _not_contains,
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "greater_than": _greater_than,
    "less_than": _less_than,
    "in_list": _in_list,
    "not_in_list": _not_in_list,
}
