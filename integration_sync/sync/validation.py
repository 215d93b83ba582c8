"""
Input validation for connections and sync mappings.

These validators collect every problem with a raw input dict and report them together as
a ValidationResult, rather than raising on the first one.
"""

import re
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from integration_sync.sync.models import (
    FieldMapping,
    FilterCondition,
    FilterOperator,
    IntegrationType,
    Provider,
    SyncDirection,
    SyncFrequency,
    TransformFunction,
    ValidationResult,
)

CONNECTION_CODE_MAX_LENGTH = 50
CONNECTION_NAME_MAX_LENGTH = 100
CONNECTION_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
IS_ACTIVE_ERROR = "Active flag must be true or false"


def _is_blank(value: Any) -> bool:
    return not isinstance(value, str) or not value.strip()


def _enum_values(enum_cls: type) -> str:
    return ", ".join(member.value for member in enum_cls)


def _is_member(enum_cls: type, value: Any) -> bool:
    try:
        enum_cls(value)
    except ValueError:
        return False
    return True


def format_validation_error(error: ValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into "field: message" strings."""
    messages = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        messages.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return messages


def validate_connection_code(code: Any) -> ValidationResult:
    if _is_blank(code):
        return ValidationResult(valid=False, errors=["Connection code is required"])

    errors = []
    code = code.strip()
    if len(code) > CONNECTION_CODE_MAX_LENGTH:
        errors.append(f"Connection code must be at most {CONNECTION_CODE_MAX_LENGTH} characters")
    if not CONNECTION_CODE_PATTERN.match(code):
        errors.append(
            "Connection code may only contain letters, numbers, underscores and hyphens"
        )
    return ValidationResult(valid=not errors, errors=errors)


def validate_connection_name(name: Any) -> ValidationResult:
    if _is_blank(name):
        return ValidationResult(valid=False, errors=["Connection name is required"])
    if len(name.strip()) > CONNECTION_NAME_MAX_LENGTH:
        return ValidationResult(
            valid=False,
            errors=[f"Connection name must be at most {CONNECTION_NAME_MAX_LENGTH} characters"],
        )
    return ValidationResult(valid=True)


def validate_connection_input(data: Mapping[str, Any]) -> ValidationResult:
    errors = [
        *validate_connection_code(data.get("connection_code")).errors,
        *validate_connection_name(data.get("connection_name")).errors,
    ]

    integration_type = data.get("integration_type")
    if integration_type is None:
        errors.append("Integration type is required")
    elif not _is_member(IntegrationType, integration_type):
        errors.append(f"Integration type must be one of: {_enum_values(IntegrationType)}")

    provider = data.get("provider")
    if provider is None:
        errors.append("Provider is required")
    elif not _is_member(Provider, provider):
        errors.append(f"Provider must be one of: {_enum_values(Provider)}")

    return ValidationResult(valid=not errors, errors=errors)


def validate_field_mapping(data: Any) -> ValidationResult:
    if not isinstance(data, Mapping):
        return ValidationResult(valid=False, errors=["Field mapping must be an object"])

    errors = []
    if _is_blank(data.get("local_field")):
        errors.append("Local field is required")
    if _is_blank(data.get("remote_field")):
        errors.append("Remote field is required")

    transform = data.get("transform")
    if transform is not None and not _is_member(TransformFunction, transform):
        errors.append(f"Transform must be one of: {_enum_values(TransformFunction)}")

    return ValidationResult(valid=not errors, errors=errors)


def validate_filter_condition(data: Any) -> ValidationResult:
    if not isinstance(data, Mapping):
        return ValidationResult(valid=False, errors=["Filter condition must be an object"])

    errors = []
    if _is_blank(data.get("field")):
        errors.append("Filter field is required")

    operator = data.get("operator")
    if operator is None:
        errors.append("Filter operator is required")
    elif not _is_member(FilterOperator, operator):
        errors.append(f"Filter operator must be one of: {_enum_values(FilterOperator)}")
    elif FilterOperator(operator) is FilterOperator.IN and not isinstance(
        data.get("value"), list | tuple | set
    ):
        errors.append("Filter value must be a list for the 'in' operator")

    return ValidationResult(valid=not errors, errors=errors)


def validate_sync_mapping_input(data: Mapping[str, Any]) -> ValidationResult:
    errors = []
    if _is_blank(data.get("connection_id")):
        errors.append("Connection ID is required")
    if _is_blank(data.get("local_table")):
        errors.append("Local table is required")
    if _is_blank(data.get("remote_entity")):
        errors.append("Remote entity is required")

    field_mappings = data.get("field_mappings")
    if not isinstance(field_mappings, list) or not field_mappings:
        errors.append("At least one field mapping is required")
    else:
        for index, mapping in enumerate(field_mappings):
            errors.extend(
                f"Field mapping {index + 1}: {error}"
                for error in validate_field_mapping(mapping).errors
            )

    direction = data.get("sync_direction")
    if direction is not None and not _is_member(SyncDirection, direction):
        errors.append(f"Sync direction must be one of: {_enum_values(SyncDirection)}")

    frequency = data.get("sync_frequency")
    if frequency is not None and not _is_member(SyncFrequency, frequency):
        errors.append(f"Sync frequency must be one of: {_enum_values(SyncFrequency)}")

    if data.get("is_active") is not None and not isinstance(data["is_active"], bool):
        errors.append(IS_ACTIVE_ERROR)

    filter_conditions = data.get("filter_conditions")
    if filter_conditions is not None:
        if not isinstance(filter_conditions, list):
            errors.append("Filter conditions must be a list")
        else:
            for index, condition in enumerate(filter_conditions):
                errors.extend(
                    f"Filter condition {index + 1}: {error}"
                    for error in validate_filter_condition(condition).errors
                )

    return ValidationResult(valid=not errors, errors=errors)


def parse_field_mappings(raw: list[Mapping[str, Any]]) -> list[FieldMapping]:
    """Build FieldMapping models from already-validated raw dicts."""
    return [FieldMapping.model_validate(item) for item in raw]


def parse_filter_conditions(raw: list[Mapping[str, Any]] | None) -> list[FilterCondition] | None:
    if raw is None:
        return None
    return [FilterCondition.model_validate(item) for item in raw]
