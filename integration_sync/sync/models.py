"""
Data models for the integration sync engine.

This module provides Pydantic models for sync configuration (connections, mappings,
field mappings, filter conditions), run bookkeeping (sync context, sync logs, results)
and the values exchanged with external adapters.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from integration_sync.utils.timestamp import utc_now


class IntegrationType(str, Enum):
    """Supported integration categories."""

    ACCOUNTING = "accounting"
    TRACKING = "tracking"
    EMAIL = "email"
    STORAGE = "storage"
    MESSAGING = "messaging"
    CUSTOM = "custom"


class Provider(str, Enum):
    """Supported external service providers."""

    ACCURATE = "accurate"
    JURNAL = "jurnal"
    XERO = "xero"
    GOOGLE_SHEETS = "google_sheets"
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"
    SLACK = "slack"
    GOOGLE_DRIVE = "google_drive"
    DROPBOX = "dropbox"


class SyncDirection(str, Enum):
    PUSH = "push"
    PULL = "pull"
    BIDIRECTIONAL = "bidirectional"


class SyncFrequency(str, Enum):
    REALTIME = "realtime"
    HOURLY = "hourly"
    DAILY = "daily"
    MANUAL = "manual"


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class SyncType(str, Enum):
    PUSH = "push"
    PULL = "pull"
    FULL_SYNC = "full_sync"


class TransformFunction(str, Enum):
    """Value transforms a field mapping may apply before assignment."""

    DATE_FORMAT = "date_format"
    CURRENCY_FORMAT = "currency_format"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    CUSTOM = "custom"


class FilterOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    IN = "in"
    CONTAINS = "contains"


class RecordOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"


def _require_non_blank(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("must not be blank")
    return value


# =====================================================
# Sync configuration
# =====================================================


class FieldMapping(BaseModel, frozen=True):
    """One local-path to remote-path translation rule. Paths use dot notation."""

    local_field: str
    remote_field: str
    transform: TransformFunction | None = None

    strip_non_blank = field_validator("local_field", "remote_field")(_require_non_blank)


class FilterCondition(BaseModel, frozen=True):
    """Predicate restricting which records a mapping applies to."""

    field: str
    operator: FilterOperator
    value: Any = None

    strip_non_blank = field_validator("field")(_require_non_blank)


class RetryConfig(BaseModel, frozen=True):
    """Bounds for the retry/backoff engine. Delays are in seconds."""

    max_retries: int = Field(3, ge=0)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)


DEFAULT_RETRY_CONFIG = RetryConfig()


class SyncMapping(BaseModel):
    """Binds one local collection to one remote entity type."""

    id: str
    connection_id: str
    local_table: str
    remote_entity: str
    field_mappings: list[FieldMapping] = Field(..., min_length=1)
    sync_direction: SyncDirection = SyncDirection.PUSH
    sync_frequency: SyncFrequency = SyncFrequency.REALTIME
    filter_conditions: list[FilterCondition] | None = None
    is_active: bool = True
    created_at: datetime | None = None

    strip_non_blank = field_validator("local_table", "remote_entity")(_require_non_blank)


class SyncMappingCreate(BaseModel):
    """Validated input for creating a sync mapping."""

    connection_id: str
    local_table: str
    remote_entity: str
    field_mappings: list[FieldMapping] = Field(..., min_length=1)
    sync_direction: SyncDirection = SyncDirection.PUSH
    sync_frequency: SyncFrequency = SyncFrequency.REALTIME
    filter_conditions: list[FilterCondition] | None = None
    is_active: bool = True

    strip_non_blank = field_validator("connection_id", "local_table", "remote_entity")(
        _require_non_blank
    )


class IntegrationConnection(BaseModel):
    """Credentials and settings for one external system."""

    id: str
    connection_code: str
    connection_name: str
    integration_type: IntegrationType
    provider: Provider
    credentials: dict[str, str | None] | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_sync_at: datetime | None = None
    last_error: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class ExternalIdMapping(BaseModel):
    """Persisted link between a local record and the record created remotely."""

    id: str
    connection_id: str
    local_table: str
    local_id: str
    external_id: str
    external_data: dict[str, Any] | None = None
    synced_at: datetime | None = None


# =====================================================
# Records and adapter results
# =====================================================


class SyncRecord(BaseModel):
    """Opaque local record envelope: local id plus the mapped payload."""

    local_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class RecordSyncResult(BaseModel):
    local_id: str
    success: bool
    operation: RecordOperation
    external_id: str | None = None
    error: str | None = None
    error_code: str | None = None


class AdapterResult(BaseModel):
    """Outcome of one create/update call on an external adapter."""

    success: bool
    external_id: str | None = None
    error: str | None = None
    error_code: str | None = None


class AdapterFetchResult(BaseModel):
    """Outcome of one fetch call on a pull-capable adapter."""

    success: bool
    data: list[dict[str, Any]] | None = None
    error: str | None = None
    error_code: str | None = None


class TokenStatus(BaseModel, frozen=True):
    valid: bool
    expired: bool
    requires_reauth: bool


class TokenRefreshResult(BaseModel):
    success: bool
    error: str | None = None


# =====================================================
# Run bookkeeping
# =====================================================


class SyncError(BaseModel, frozen=True):
    record_id: str
    error_code: str
    error_message: str
    timestamp: datetime = Field(default_factory=utc_now)


class SyncContext(BaseModel, frozen=True):
    """Running accumulator for one sync run. Folded by replacement, never mutated."""

    connection_id: str
    mapping_id: str | None
    sync_type: SyncType
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    errors: tuple[SyncError, ...] = ()
    started_at: datetime = Field(default_factory=utc_now)


class SyncResult(BaseModel):
    """Terminal summary of a sync run reported to callers."""

    sync_log_id: str
    status: SyncStatus
    records_processed: int
    records_created: int
    records_updated: int
    records_failed: int
    error_details: list[SyncError] = Field(default_factory=list)


class SyncLog(BaseModel):
    """Audit trail entry for one sync run."""

    id: str
    connection_id: str
    mapping_id: str | None = None
    sync_type: SyncType
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    status: SyncStatus = SyncStatus.RUNNING
    error_details: list[SyncError] | None = None
    created_at: datetime | None = None


class SyncLogCreate(BaseModel):
    connection_id: str
    mapping_id: str | None = None
    sync_type: SyncType
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    status: SyncStatus = SyncStatus.RUNNING
    error_details: list[SyncError] | None = None


class SyncLogUpdate(BaseModel):
    """Partial update for a sync log. Unset fields are left untouched."""

    completed_at: datetime | None = None
    records_processed: int | None = Field(None, ge=0)
    records_created: int | None = Field(None, ge=0)
    records_updated: int | None = Field(None, ge=0)
    records_failed: int | None = Field(None, ge=0)
    status: SyncStatus | None = None
    error_details: list[SyncError] | None = None


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
