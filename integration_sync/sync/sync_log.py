"""
Sync log lifecycle: state machine, create/update preparation, queries and statistics.

A log starts as running and moves exactly once to one of the terminal states
completed, failed or partial.
"""

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from integration_sync.sync.context import context_to_sync_log_update
from integration_sync.sync.models import (
    SyncContext,
    SyncError,
    SyncLog,
    SyncLogCreate,
    SyncLogUpdate,
    SyncStatus,
    SyncType,
    ValidationResult,
)
from integration_sync.utils.timestamp import ensure_utc, utc_now

VALID_STATE_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.RUNNING: frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.PARTIAL}),
    SyncStatus.COMPLETED: frozenset(),
    SyncStatus.FAILED: frozenset(),
    SyncStatus.PARTIAL: frozenset(),
}


class SyncStats(BaseModel):
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    partial_syncs: int = 0
    total_records_processed: int = 0
    total_records_created: int = 0
    total_records_updated: int = 0
    total_records_failed: int = 0
    success_rate: float = 0.0


# =====================================================
# State machine
# =====================================================


def is_valid_state_transition(from_status: SyncStatus, to_status: SyncStatus) -> bool:
    return to_status in VALID_STATE_TRANSITIONS[from_status]


def is_terminal_state(status: SyncStatus) -> bool:
    return not VALID_STATE_TRANSITIONS[status]


def get_valid_next_states(status: SyncStatus) -> list[SyncStatus]:
    return sorted(VALID_STATE_TRANSITIONS[status], key=lambda s: s.value)


# =====================================================
# Create / update preparation
# =====================================================


def validate_sync_log_input(connection_id: Any, sync_type: Any) -> ValidationResult:
    errors = []
    if not isinstance(connection_id, str) or not connection_id.strip():
        errors.append("Connection ID is required")

    if not sync_type:
        errors.append("Sync type is required")
    else:
        try:
            SyncType(sync_type)
        except ValueError:
            errors.append("Invalid sync type")

    return ValidationResult(valid=not errors, errors=errors)


def prepare_sync_log_for_create(
    connection_id: str, sync_type: SyncType | str, mapping_id: str | None = None
) -> SyncLogCreate | ValidationResult:
    """Build a new running log with zero counts, or the failing ValidationResult."""
    validation = validate_sync_log_input(connection_id, sync_type)
    if not validation.valid:
        return validation

    return SyncLogCreate(
        connection_id=connection_id.strip(),
        mapping_id=mapping_id or None,
        sync_type=SyncType(sync_type),
        started_at=utc_now(),
        status=SyncStatus.RUNNING,
    )


def prepare_sync_log_for_update(
    update: SyncLogUpdate, current_status: SyncStatus
) -> dict[str, Any] | ValidationResult:
    """
    Check a status change against the state machine and return the fields to write.

    Only fields explicitly set on the update are returned.
    """
    if update.status is not None:
        errors = []
        if not is_valid_state_transition(current_status, update.status):
            errors.append(
                f"Invalid status transition from {current_status.value} to {update.status.value}"
            )
        if is_terminal_state(current_status):
            errors.append(
                f"Cannot update status of a completed sync log (current: {current_status.value})"
            )
        if errors:
            return ValidationResult(valid=False, errors=errors)

    return update.model_dump(exclude_unset=True)


def prepare_sync_completion(ctx: SyncContext) -> SyncLogUpdate:
    """Final update for a run that reached its end; status is derived from the counts."""
    return context_to_sync_log_update(ctx)


def prepare_sync_failure(errors: list[SyncError], ctx: SyncContext | None = None) -> SyncLogUpdate:
    """Mark a run failed outright, keeping whatever counts it had reached."""
    return SyncLogUpdate(
        completed_at=utc_now(),
        records_processed=ctx.records_processed if ctx else 0,
        records_created=ctx.records_created if ctx else 0,
        records_updated=ctx.records_updated if ctx else 0,
        records_failed=ctx.records_failed if ctx else 0,
        status=SyncStatus.FAILED,
        error_details=errors,
    )


def prepare_sync_progress(ctx: SyncContext) -> SyncLogUpdate:
    return SyncLogUpdate(
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
    )


# =====================================================
# Queries and statistics
# =====================================================


def filter_sync_logs(
    logs: Iterable[SyncLog],
    connection_id: str | None = None,
    status: SyncStatus | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> list[SyncLog]:
    """Filter logs in memory. Date bounds are inclusive and compared on started_at."""
    lower = ensure_utc(from_date) if from_date else None
    upper = ensure_utc(to_date) if to_date else None

    filtered = []
    for log in logs:
        if connection_id and log.connection_id != connection_id:
            continue
        if status and log.status != status:
            continue
        started_at = ensure_utc(log.started_at)
        if lower and started_at < lower:
            continue
        if upper and started_at > upper:
            continue
        filtered.append(log)
    return filtered


def calculate_sync_stats(logs: Iterable[SyncLog]) -> SyncStats:
    stats = SyncStats()
    for log in logs:
        stats.total_syncs += 1
        if log.status is SyncStatus.COMPLETED:
            stats.successful_syncs += 1
        elif log.status is SyncStatus.FAILED:
            stats.failed_syncs += 1
        elif log.status is SyncStatus.PARTIAL:
            stats.partial_syncs += 1

        stats.total_records_processed += log.records_processed
        stats.total_records_created += log.records_created
        stats.total_records_updated += log.records_updated
        stats.total_records_failed += log.records_failed

    if stats.total_syncs:
        stats.success_rate = stats.successful_syncs / stats.total_syncs * 100
    return stats


def get_most_recent_sync(logs: Iterable[SyncLog], connection_id: str) -> SyncLog | None:
    connection_logs = [log for log in logs if log.connection_id == connection_id]
    if not connection_logs:
        return None
    return max(connection_logs, key=lambda log: ensure_utc(log.started_at))


def get_running_syncs(logs: Iterable[SyncLog]) -> list[SyncLog]:
    return [log for log in logs if log.status is SyncStatus.RUNNING]


def get_failed_syncs(logs: Iterable[SyncLog]) -> list[SyncLog]:
    return [log for log in logs if log.status is SyncStatus.FAILED]


def validate_record_count_consistency(log: SyncLog) -> bool:
    """created + updated + failed must equal processed."""
    return log.records_created + log.records_updated + log.records_failed == log.records_processed


def calculate_sync_duration(log: SyncLog) -> float | None:
    """Duration of a finished run in seconds, or None while it is still running."""
    if log.completed_at is None:
        return None
    return (ensure_utc(log.completed_at) - ensure_utc(log.started_at)).total_seconds()


# =====================================================
# Error details
# =====================================================


def create_sync_error(record_id: str, error_code: str, error_message: str) -> SyncError:
    return SyncError(
        record_id=record_id,
        error_code=error_code,
        error_message=error_message,
        timestamp=utc_now(),
    )


def group_errors_by_code(errors: Iterable[SyncError]) -> dict[str, list[SyncError]]:
    grouped: defaultdict[str, list[SyncError]] = defaultdict(list)
    for error in errors:
        grouped[error.error_code].append(error)
    return dict(grouped)


def get_unique_error_codes(errors: Iterable[SyncError]) -> list[str]:
    """Distinct error codes in order of first appearance."""
    return list(dict.fromkeys(error.error_code for error in errors))


def get_failed_record_ids(log: SyncLog) -> list[str]:
    """Distinct ids of the records that failed in a run, in order of first failure."""
    return list(dict.fromkeys(error.record_id for error in log.error_details or []))
