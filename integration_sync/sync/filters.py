"""
Filter-condition evaluation for sync mappings.

Conditions are ANDed. Comparisons are strict about types: a mismatched pairing, an
unknown operator or a malformed filter value evaluates to False instead of raising.
"""

from collections.abc import Iterable, Mapping
from datetime import date, datetime
from numbers import Number
from typing import Any, TypeVar

from integration_sync.sync.models import FilterCondition, FilterOperator
from integration_sync.sync.transforms import get_nested_value
from integration_sync.utils.timestamp import ensure_utc


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def _strict_equals(a: Any, b: Any) -> bool:
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a is b
    if _is_number(a) and _is_number(b):
        return a == b
    if type(a) is not type(b) and not (isinstance(a, type(b)) or isinstance(b, type(a))):
        return False
    return a == b


def _comparable_pair(a: Any, b: Any) -> tuple[Any, Any] | None:
    if _is_number(a) and _is_number(b):
        return a, b
    if isinstance(a, str) and isinstance(b, str):
        return a, b
    if isinstance(a, datetime) and isinstance(b, datetime):
        return ensure_utc(a), ensure_utc(b)
    if (
        isinstance(a, date)
        and isinstance(b, date)
        and not isinstance(a, datetime)
        and not isinstance(b, datetime)
    ):
        return a, b
    return None


def _contains(field_value: Any, filter_value: Any) -> bool:
    if isinstance(field_value, str):
        if not isinstance(filter_value, str):
            return False
        return filter_value.casefold() in field_value.casefold()
    if isinstance(field_value, list | tuple | set | frozenset):
        return any(_strict_equals(item, filter_value) for item in field_value)
    return False


def evaluate_operator(field_value: Any, operator: FilterOperator | str, filter_value: Any) -> bool:
    try:
        op = FilterOperator(operator)
    except ValueError:
        return False

    match op:
        case FilterOperator.EQ:
            return _strict_equals(field_value, filter_value)
        case FilterOperator.NEQ:
            return not _strict_equals(field_value, filter_value)
        case FilterOperator.IN:
            if not isinstance(filter_value, list | tuple | set | frozenset):
                return False
            return any(_strict_equals(field_value, item) for item in filter_value)
        case FilterOperator.CONTAINS:
            return _contains(field_value, filter_value)

    pair = _comparable_pair(field_value, filter_value)
    if pair is None:
        return False
    left, right = pair
    match op:
        case FilterOperator.GT:
            return left > right
        case FilterOperator.LT:
            return left < right
        case FilterOperator.GTE:
            return left >= right
        case FilterOperator.LTE:
            return left <= right
    return False


def evaluate_filter_condition(record: Mapping[str, Any], condition: FilterCondition) -> bool:
    """Evaluate one condition against a record; the field may be a dot path."""
    field_value = get_nested_value(record, condition.field)
    return evaluate_operator(field_value, condition.operator, condition.value)


def evaluate_filter_conditions(
    record: Mapping[str, Any], conditions: Iterable[FilterCondition] | None
) -> bool:
    """True when every condition holds. No conditions means the record is included."""
    if not conditions:
        return True
    return all(evaluate_filter_condition(record, condition) for condition in conditions)


R = TypeVar("R", bound=Mapping[str, Any])


def filter_records(
    records: Iterable[R], conditions: list[FilterCondition] | None
) -> list[R]:
    if not conditions:
        return list(records)
    return [record for record in records if evaluate_filter_conditions(record, conditions)]
