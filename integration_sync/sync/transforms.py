"""
Field mapping and value transforms.

Field paths use dot notation ("customer.address.city") over plain nested dicts. Reading
a path whose intermediate segment is missing yields no value; writing a path creates
the intermediate dicts it needs.
"""

from collections.abc import Iterable, Mapping, MutableMapping
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import Any

from dateutil import parser as date_parser

from integration_sync.sync.models import FieldMapping, TransformFunction
from integration_sync.utils.timestamp import ensure_utc, parse_iso_timestamp

_MISSING: Any = object()
_CENTS = Decimal("0.01")


def get_nested_value(obj: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Get a nested value using dot notation, or default when any segment is missing."""
    current: Any = obj
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def set_nested_value(obj: MutableMapping[str, Any], path: str, value: Any) -> None:
    """Set a nested value using dot notation. Non-dict intermediates are replaced."""
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        if not isinstance(current.get(part), MutableMapping):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _parse_date_string(value: str) -> datetime | None:
    """ISO 8601 first, then anything dateutil understands (RFC 2822, "Jan 15, 2024", ...)."""
    try:
        return parse_iso_timestamp(value)
    except ValueError:
        pass
    try:
        return date_parser.parse(value)
    except (ValueError, OverflowError):
        return None


def _format_date(value: Any) -> Any:
    if isinstance(value, str):
        parsed = _parse_date_string(value)
        if parsed is None:
            return value
        value = parsed
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = ensure_utc(value)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _round_cents(amount: Decimal) -> Decimal:
    # quantize needs one digit of precision per integer digit plus the two cents
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, amount.adjusted() + 4)
        return amount.quantize(_CENTS, rounding=ROUND_HALF_UP)


def _format_currency(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            return value
        return _round_cents(value)
    if isinstance(value, int | float | str):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            return value
        if not amount.is_finite():
            return value
        return float(_round_cents(amount))
    return value


def apply_transform(value: Any, transform: TransformFunction | str) -> Any:
    """
    Apply a named transform to a value.

    None passes through unchanged, as do values of a type the transform does not handle.
    CUSTOM is a passthrough marker; the caller resolves custom transforms.
    """
    if value is None:
        return value

    match TransformFunction(transform):
        case TransformFunction.DATE_FORMAT:
            return _format_date(value)
        case TransformFunction.CURRENCY_FORMAT:
            return _format_currency(value)
        case TransformFunction.UPPERCASE:
            return value.upper() if isinstance(value, str) else value
        case TransformFunction.LOWERCASE:
            return value.lower() if isinstance(value, str) else value
        case TransformFunction.CUSTOM:
            return value


def _map_fields(
    source: Mapping[str, Any],
    field_mappings: Iterable[FieldMapping],
    reverse: bool,
) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for mapping in field_mappings:
        from_path, to_path = (
            (mapping.remote_field, mapping.local_field)
            if reverse
            else (mapping.local_field, mapping.remote_field)
        )
        value = get_nested_value(source, from_path, _MISSING)
        if value is _MISSING:
            continue
        if mapping.transform:
            value = apply_transform(value, mapping.transform)
        set_nested_value(result, to_path, value)
    return result


def apply_field_mappings(
    source_record: Mapping[str, Any], field_mappings: Iterable[FieldMapping]
) -> dict[str, Any]:
    """
    Map a local record into the remote shape, in mapping order.

    Fields absent from the source are left out of the result rather than written as
    None, so a push never blanks remote fields the local record does not carry.
    """
    return _map_fields(source_record, field_mappings, reverse=False)


def apply_reverse_field_mappings(
    remote_record: Mapping[str, Any], field_mappings: Iterable[FieldMapping]
) -> dict[str, Any]:
    """Map a remote record back into the local shape (pull direction)."""
    return _map_fields(remote_record, field_mappings, reverse=True)


def transform_record_batch(
    records: Iterable[Mapping[str, Any]], field_mappings: list[FieldMapping]
) -> list[dict[str, Any]]:
    return [apply_field_mappings(record, field_mappings) for record in records]
