"""Sync mapping preparation, activity checks and the filter-then-transform pipeline."""

from collections.abc import Iterable, Mapping
from typing import Any

from integration_sync.sync.filters import filter_records
from integration_sync.sync.models import (
    SyncDirection,
    SyncFrequency,
    SyncMapping,
    SyncMappingCreate,
    ValidationResult,
)
from integration_sync.sync.transforms import transform_record_batch
from integration_sync.sync.validation import (
    IS_ACTIVE_ERROR,
    parse_field_mappings,
    parse_filter_conditions,
    validate_field_mapping,
    validate_filter_condition,
    validate_sync_mapping_input,
)

_PUSH_DIRECTIONS = frozenset({SyncDirection.PUSH, SyncDirection.BIDIRECTIONAL})
_PULL_DIRECTIONS = frozenset({SyncDirection.PULL, SyncDirection.BIDIRECTIONAL})


def prepare_sync_mapping_for_create(
    data: Mapping[str, Any],
) -> SyncMappingCreate | ValidationResult:
    """
    Validate raw mapping input and build the record to insert.

    Returns the failing ValidationResult when the input is invalid. Names are trimmed, and
    direction, frequency and activity default to push, realtime and active.
    """
    validation = validate_sync_mapping_input(data)
    if not validation.valid:
        return validation

    return SyncMappingCreate(
        connection_id=data["connection_id"],
        local_table=data["local_table"],
        remote_entity=data["remote_entity"],
        field_mappings=parse_field_mappings(data["field_mappings"]),
        sync_direction=data.get("sync_direction") or SyncDirection.PUSH,
        sync_frequency=data.get("sync_frequency") or SyncFrequency.REALTIME,
        filter_conditions=parse_filter_conditions(data.get("filter_conditions")),
        is_active=data.get("is_active") is not False,
    )


def prepare_sync_mapping_for_update(data: Mapping[str, Any]) -> dict[str, Any] | ValidationResult:
    """Build a partial update holding only the supplied fields, trimmed and validated."""
    errors: list[str] = []
    update: dict[str, Any] = {}

    for key in ("local_table", "remote_entity"):
        if key in data:
            value = data[key]
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{key.replace('_', ' ').capitalize()} must not be blank")
            else:
                update[key] = value.strip()

    if "field_mappings" in data:
        raw = data["field_mappings"]
        if not isinstance(raw, list) or not raw:
            errors.append("At least one field mapping is required")
        else:
            mapping_errors = [
                f"Field mapping {index + 1}: {error}"
                for index, item in enumerate(raw)
                for error in validate_field_mapping(item).errors
            ]
            errors.extend(mapping_errors)
            if not mapping_errors:
                update["field_mappings"] = parse_field_mappings(raw)

    if "sync_direction" in data:
        try:
            update["sync_direction"] = SyncDirection(data["sync_direction"])
        except ValueError:
            errors.append(f"Invalid sync direction: {data['sync_direction']}")

    if "sync_frequency" in data:
        try:
            update["sync_frequency"] = SyncFrequency(data["sync_frequency"])
        except ValueError:
            errors.append(f"Invalid sync frequency: {data['sync_frequency']}")

    if "filter_conditions" in data:
        raw = data["filter_conditions"]
        if raw is not None and not isinstance(raw, list):
            errors.append("Filter conditions must be a list")
        else:
            condition_errors = [
                f"Filter condition {index + 1}: {error}"
                for index, item in enumerate(raw or [])
                for error in validate_filter_condition(item).errors
            ]
            errors.extend(condition_errors)
            if not condition_errors:
                update["filter_conditions"] = parse_filter_conditions(raw)

    if "is_active" in data:
        if isinstance(data["is_active"], bool):
            update["is_active"] = data["is_active"]
        else:
            errors.append(IS_ACTIVE_ERROR)

    if errors:
        return ValidationResult(valid=False, errors=errors)
    return update


def is_mapping_active(mapping: SyncMapping) -> bool:
    return mapping.is_active is True


def filter_active_mappings(mappings: Iterable[SyncMapping]) -> list[SyncMapping]:
    return [mapping for mapping in mappings if is_mapping_active(mapping)]


def mapping_supports_push(mapping: SyncMapping) -> bool:
    return mapping.sync_direction in _PUSH_DIRECTIONS


def mapping_supports_pull(mapping: SyncMapping) -> bool:
    return mapping.sync_direction in _PULL_DIRECTIONS


def process_sync_mapping(
    records: Iterable[Mapping[str, Any]], mapping: SyncMapping
) -> list[dict[str, Any]]:
    """Filter records by the mapping's conditions, then map the survivors to the remote shape."""
    filtered = filter_records(records, mapping.filter_conditions)
    return transform_record_batch(filtered, mapping.field_mappings)
