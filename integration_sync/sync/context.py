"""
Sync context folding and status derivation.

A SyncContext is folded by replacement: every function here returns a new context and
leaves its argument untouched. records_processed always equals
records_created + records_updated + records_failed.
"""

from collections.abc import Iterable

from integration_sync.sync.error_codes import UNKNOWN_ERROR
from integration_sync.sync.models import (
    RecordOperation,
    RecordSyncResult,
    SyncContext,
    SyncError,
    SyncLogUpdate,
    SyncResult,
    SyncStatus,
    SyncType,
)
from integration_sync.utils.timestamp import utc_now


def create_sync_context(
    connection_id: str, mapping_id: str | None, sync_type: SyncType
) -> SyncContext:
    return SyncContext(
        connection_id=connection_id,
        mapping_id=mapping_id,
        sync_type=sync_type,
        started_at=utc_now(),
    )


def record_create(ctx: SyncContext) -> SyncContext:
    return ctx.model_copy(
        update={
            "records_processed": ctx.records_processed + 1,
            "records_created": ctx.records_created + 1,
        }
    )


def record_update(ctx: SyncContext) -> SyncContext:
    return ctx.model_copy(
        update={
            "records_processed": ctx.records_processed + 1,
            "records_updated": ctx.records_updated + 1,
        }
    )


def record_failure(
    ctx: SyncContext, record_id: str, error_code: str, error_message: str
) -> SyncContext:
    error = SyncError(
        record_id=record_id,
        error_code=error_code,
        error_message=error_message,
        timestamp=utc_now(),
    )
    return ctx.model_copy(
        update={
            "records_processed": ctx.records_processed + 1,
            "records_failed": ctx.records_failed + 1,
            "errors": (*ctx.errors, error),
        }
    )


def apply_record_result(ctx: SyncContext, result: RecordSyncResult) -> SyncContext:
    if not result.success:
        return record_failure(
            ctx,
            result.local_id,
            result.error_code or UNKNOWN_ERROR,
            result.error or "Unknown error",
        )
    if result.operation is RecordOperation.CREATE:
        return record_create(ctx)
    return record_update(ctx)


def update_context_from_results(
    ctx: SyncContext, results: Iterable[RecordSyncResult]
) -> SyncContext:
    for result in results:
        ctx = apply_record_result(ctx, result)
    return ctx


def merge_contexts(base: SyncContext, other: SyncContext) -> SyncContext:
    """Add other's counts and errors into base, keeping base's identity and start time."""
    return base.model_copy(
        update={
            "records_processed": base.records_processed + other.records_processed,
            "records_created": base.records_created + other.records_created,
            "records_updated": base.records_updated + other.records_updated,
            "records_failed": base.records_failed + other.records_failed,
            "errors": (*base.errors, *other.errors),
        }
    )


def derive_sync_status(ctx: SyncContext) -> SyncStatus:
    """
    Terminal status for a finished run:
    - completed: nothing failed (an empty run counts as completed)
    - failed: every processed record failed
    - partial: some records failed and some succeeded
    """
    if ctx.records_failed == 0:
        return SyncStatus.COMPLETED
    if ctx.records_failed == ctx.records_processed:
        return SyncStatus.FAILED
    return SyncStatus.PARTIAL


def context_to_result(ctx: SyncContext, sync_log_id: str) -> SyncResult:
    return SyncResult(
        sync_log_id=sync_log_id,
        status=derive_sync_status(ctx),
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
        error_details=list(ctx.errors),
    )


def context_to_sync_log_update(ctx: SyncContext) -> SyncLogUpdate:
    return SyncLogUpdate(
        completed_at=utc_now(),
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
        status=derive_sync_status(ctx),
        error_details=list(ctx.errors) or None,
    )
