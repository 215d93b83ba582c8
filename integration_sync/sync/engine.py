"""
Sync run orchestration: push, pull, full sync and retry of failed records.

Every run binds connection_id, mapping_id and sync_type into the log context for its
duration and reports record-level and remote failures through its SyncContext instead of
raising. The only exceptions that escape are cancellation and invalid model input.

Usage:
    outcome = await execute_push_sync(
        PushSyncInput(connection, mapping, records, existing_mappings, adapter),
        refresh_handler=refresh_connection_token,
        on_record_synced=save_external_id,
    )
    update = context_to_sync_log_update(outcome.context)
"""

from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from integration_sync.sync.adapter import ExternalApiAdapter, PullCapableAdapter, supports_pull
from integration_sync.sync.batch import RecordSyncedCallback, process_sync_batch
from integration_sync.sync.context import (
    create_sync_context,
    derive_sync_status,
    merge_contexts,
    record_create,
    record_failure,
    update_context_from_results,
)
from integration_sync.sync.error_codes import (
    INTERNAL_ERROR,
    NOT_SUPPORTED,
    TIMEOUT,
    TOKEN_REFRESH_FAILED,
    UNKNOWN_ERROR,
    VALIDATION_ERROR,
    is_token_expired_error,
)
from integration_sync.sync.filters import evaluate_filter_conditions, filter_records
from integration_sync.sync.mappings import (
    filter_active_mappings,
    is_mapping_active,
    mapping_supports_pull,
    mapping_supports_push,
)
from integration_sync.sync.models import (
    ExternalIdMapping,
    FilterCondition,
    IntegrationConnection,
    RecordSyncResult,
    RetryConfig,
    SyncContext,
    SyncLog,
    SyncMapping,
    SyncRecord,
    SyncType,
)
from integration_sync.sync.retry import OperationResult, TokenRefreshFn, retry_with_backoff
from integration_sync.sync.sync_log import get_failed_record_ids
from integration_sync.sync.tokens import RefreshHandler, create_token_refresh_fn
from integration_sync.sync.transforms import (
    apply_field_mappings,
    apply_reverse_field_mappings,
    get_nested_value,
)
from integration_sync.utils.logging import LogContext, get_logger
from integration_sync.utils.timeout import SyncTimeoutError, with_timeout

logger = get_logger(__name__)

DEFAULT_RECORD_ID_FIELD = "id"

LocalRecord = Mapping[str, Any]
MappingRecordsLoader = Callable[[SyncMapping], Awaitable[Sequence[LocalRecord]]]
ExistingMappingsLoader = Callable[[SyncMapping], Awaitable[Sequence[ExternalIdMapping]]]


# =====================================================
# Inputs and outcomes
# =====================================================


@dataclass(frozen=True)
class PushSyncInput:
    connection: IntegrationConnection
    mapping: SyncMapping
    records: Sequence[LocalRecord]
    existing_mappings: Sequence[ExternalIdMapping]
    adapter: ExternalApiAdapter
    record_id_field: str = DEFAULT_RECORD_ID_FIELD


@dataclass(frozen=True)
class PreparedPushSync:
    prepared_records: list[SyncRecord]
    mapping_lookup: dict[str, str]
    context: SyncContext
    invalid_record_indices: tuple[int, ...] = ()

    @property
    def invalid_record_count(self) -> int:
        return len(self.invalid_record_indices)


@dataclass(frozen=True)
class PushSyncOutcome:
    results: list[RecordSyncResult]
    context: SyncContext
    requires_reauth: bool = False


@dataclass(frozen=True)
class PullSyncInput:
    connection: IntegrationConnection
    mapping: SyncMapping
    adapter: ExternalApiAdapter | PullCapableAdapter
    retry_config: RetryConfig | None = None
    refresh_handler: RefreshHandler | None = None
    # Passed through to the adapter; the mapping's own conditions are applied locally
    remote_filters: list[FilterCondition] | None = None


@dataclass(frozen=True)
class PullSyncOutcome:
    data: list[dict[str, Any]] | None
    context: SyncContext
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class FullSyncInput:
    connection: IntegrationConnection
    mappings: Sequence[SyncMapping]


@dataclass(frozen=True)
class PreparedFullSync:
    active_mappings: list[SyncMapping]
    context: SyncContext


@dataclass(frozen=True)
class MappingSyncResult:
    mapping_id: str
    success: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error: str | None = None
    pulled_records: list[dict[str, Any]] | None = None


@dataclass(frozen=True)
class FullSyncOutcome:
    mapping_results: list[MappingSyncResult]
    context: SyncContext
    requires_reauth: bool = False


@dataclass(frozen=True)
class RetryFailedInput:
    sync_log: SyncLog
    records: Sequence[LocalRecord]
    existing_mappings: Sequence[ExternalIdMapping]
    adapter: ExternalApiAdapter
    failed_record_ids: Sequence[str] | None = None
    mapping: SyncMapping | None = None
    retry_config: RetryConfig | None = None
    connection: IntegrationConnection | None = None
    refresh_handler: RefreshHandler | None = None
    record_id_field: str = DEFAULT_RECORD_ID_FIELD


@dataclass(frozen=True)
class RetryFailedOutcome:
    results: list[RecordSyncResult]
    context: SyncContext
    skipped_record_ids: list[str] = field(default_factory=list)


# =====================================================
# Helpers
# =====================================================


def extract_record_id(
    record: LocalRecord, record_id_field: str = DEFAULT_RECORD_ID_FIELD
) -> str | None:
    """Local id of a record as a string, or None when the id field is missing or empty."""
    value = get_nested_value(record, record_id_field)
    if value is None or value == "":
        return None
    return str(value)


def build_mapping_lookup(
    existing_mappings: Iterable[ExternalIdMapping],
    local_table: str | None = None,
    connection_id: str | None = None,
) -> dict[str, str]:
    """Local id to external id, restricted to one table and connection when given."""
    lookup: dict[str, str] = {}
    for existing in existing_mappings:
        if local_table is not None and existing.local_table != local_table:
            continue
        if connection_id is not None and existing.connection_id != connection_id:
            continue
        lookup[existing.local_id] = existing.external_id
    return lookup


def _requires_reauth(results: Iterable[RecordSyncResult], can_refresh: bool) -> bool:
    for result in results:
        if result.error_code == TOKEN_REFRESH_FAILED:
            return True
        if not can_refresh and is_token_expired_error(result.error_code):
            return True
    return False


def _refresh_fn_for(
    connection: IntegrationConnection | None, refresh_handler: RefreshHandler | None
) -> TokenRefreshFn | None:
    if connection is None or refresh_handler is None:
        return None
    return create_token_refresh_fn(connection, refresh_handler)


def _log_run_finished(message: str, ctx: SyncContext) -> None:
    logger.info(
        message,
        status=derive_sync_status(ctx).value,
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
    )


# =====================================================
# Push
# =====================================================


def prepare_push_sync(sync_input: PushSyncInput) -> PreparedPushSync:
    """
    Filter and map local records for a push, without touching the remote system.

    Records that fail the mapping's filter conditions are dropped. Records with no local id
    are not prepared; their input positions are reported in invalid_record_indices.
    """
    mapping = sync_input.mapping
    context = create_sync_context(sync_input.connection.id, mapping.id, SyncType.PUSH)

    prepared: list[SyncRecord] = []
    invalid: list[int] = []
    for index, record in enumerate(sync_input.records):
        if not evaluate_filter_conditions(record, mapping.filter_conditions):
            continue
        local_id = extract_record_id(record, sync_input.record_id_field)
        if local_id is None:
            invalid.append(index)
            continue
        prepared.append(
            SyncRecord(local_id=local_id, data=apply_field_mappings(record, mapping.field_mappings))
        )

    lookup = build_mapping_lookup(
        sync_input.existing_mappings,
        local_table=mapping.local_table,
        connection_id=sync_input.connection.id,
    )
    return PreparedPushSync(
        prepared_records=prepared,
        mapping_lookup=lookup,
        context=context,
        invalid_record_indices=tuple(invalid),
    )


async def execute_push_sync(
    sync_input: PushSyncInput,
    retry_config: RetryConfig | None = None,
    refresh_handler: RefreshHandler | None = None,
    *,
    on_record_synced: RecordSyncedCallback | None = None,
    timeout: float | None = None,
) -> PushSyncOutcome:
    """
    Push a mapping's local records to the external system.

    Args:
        sync_input: Connection, mapping, local records, known id mappings and adapter
        retry_config: Retry bounds for each record
        refresh_handler: Refreshes the connection's token; ignored when the connection has
            no refresh token
        on_record_synced: Called after each record, e.g. to persist a new id mapping
        timeout: Wall-clock bound for the batch in seconds

    Returns:
        PushSyncOutcome with per-record results, the folded context and whether the
        connection needs interactive reauthorization.
    """
    mapping = sync_input.mapping
    with LogContext(
        connection_id=sync_input.connection.id, mapping_id=mapping.id, sync_type=SyncType.PUSH.value
    ):
        if not is_mapping_active(mapping):
            logger.info("Sync mapping is inactive, skipping push")
            return PushSyncOutcome(
                results=[],
                context=create_sync_context(sync_input.connection.id, mapping.id, SyncType.PUSH),
            )

        prepared = prepare_push_sync(sync_input)
        ctx = prepared.context
        for index in prepared.invalid_record_indices:
            ctx = record_failure(
                ctx,
                f"record[{index}]",
                VALIDATION_ERROR,
                f"Record is missing '{sync_input.record_id_field}'",
            )
        if prepared.invalid_record_count:
            logger.warning(f"{prepared.invalid_record_count} records have no local id")

        logger.info(
            "Starting push sync",
            records=len(prepared.prepared_records),
            known_external_ids=len(prepared.mapping_lookup),
        )

        refresh_fn = _refresh_fn_for(sync_input.connection, refresh_handler)
        results = await process_sync_batch(
            prepared.prepared_records,
            prepared.mapping_lookup,
            sync_input.adapter,
            retry_config,
            refresh_fn,
            on_record_synced=on_record_synced,
            timeout=timeout,
        )
        ctx = update_context_from_results(ctx, results)
        requires_reauth = _requires_reauth(results, can_refresh=refresh_fn is not None)
        if requires_reauth:
            logger.warning("Connection requires reauthorization")

        _log_run_finished("Push sync finished", ctx)
        return PushSyncOutcome(results=results, context=ctx, requires_reauth=requires_reauth)


# =====================================================
# Pull
# =====================================================


async def execute_pull_sync(sync_input: PullSyncInput) -> PullSyncOutcome:
    """
    Fetch a mapping's remote entity and map it back into local records.

    Each returned record that passes the mapping's filter conditions counts as created.
    Persisting the records is left to the caller.
    """
    mapping = sync_input.mapping
    with LogContext(
        connection_id=sync_input.connection.id, mapping_id=mapping.id, sync_type=SyncType.PULL.value
    ):
        ctx = create_sync_context(sync_input.connection.id, mapping.id, SyncType.PULL)

        if not supports_pull(sync_input.adapter):
            error = "Adapter does not support fetching records"
            logger.warning(error)
            ctx = record_failure(ctx, mapping.id, NOT_SUPPORTED, error)
            return PullSyncOutcome(data=None, context=ctx, error=error, error_code=NOT_SUPPORTED)

        adapter: PullCapableAdapter = sync_input.adapter

        async def fetch() -> OperationResult[list[dict[str, Any]]]:
            outcome = await adapter.fetch_records(mapping.remote_entity, sync_input.remote_filters)
            return OperationResult(
                success=outcome.success,
                data=outcome.data or [],
                error=outcome.error,
                error_code=outcome.error_code,
            )

        refresh_fn = _refresh_fn_for(sync_input.connection, sync_input.refresh_handler)
        result = await retry_with_backoff(fetch, sync_input.retry_config, refresh_fn)

        if not result.success:
            error = result.error or "Failed to fetch records"
            error_code = result.error_code or UNKNOWN_ERROR
            logger.warning("Pull sync fetch failed", error=error, error_code=error_code)
            ctx = record_failure(ctx, mapping.id, error_code, error)
            return PullSyncOutcome(data=None, context=ctx, error=error, error_code=error_code)

        local_records = [
            apply_reverse_field_mappings(remote, mapping.field_mappings)
            for remote in result.data or []
        ]
        local_records = filter_records(local_records, mapping.filter_conditions)
        for _ in local_records:
            ctx = record_create(ctx)

        _log_run_finished("Pull sync finished", ctx)
        return PullSyncOutcome(data=local_records, context=ctx)


# =====================================================
# Full sync
# =====================================================


def prepare_full_sync(sync_input: FullSyncInput) -> PreparedFullSync:
    return PreparedFullSync(
        active_mappings=filter_active_mappings(sync_input.mappings),
        context=create_sync_context(sync_input.connection.id, None, SyncType.FULL_SYNC),
    )


def _mapping_result(
    mapping: SyncMapping,
    ctx: SyncContext,
    error: str | None = None,
    pulled_records: list[dict[str, Any]] | None = None,
) -> MappingSyncResult:
    return MappingSyncResult(
        mapping_id=mapping.id,
        success=error is None,
        records_processed=ctx.records_processed,
        records_created=ctx.records_created,
        records_updated=ctx.records_updated,
        records_failed=ctx.records_failed,
        error=error,
        pulled_records=pulled_records,
    )


async def _sync_mapping(
    connection: IntegrationConnection,
    mapping: SyncMapping,
    get_mapping_records: MappingRecordsLoader,
    get_existing_mappings: ExistingMappingsLoader,
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig | None,
    refresh_handler: RefreshHandler | None,
    on_record_synced: RecordSyncedCallback | None = None,
) -> tuple[MappingSyncResult, SyncContext, bool]:
    ctx = create_sync_context(connection.id, mapping.id, SyncType.FULL_SYNC)
    error = None
    pulled_records = None
    requires_reauth = False

    if mapping_supports_push(mapping):
        records = await get_mapping_records(mapping)
        existing = await get_existing_mappings(mapping)
        push = await execute_push_sync(
            PushSyncInput(connection, mapping, records, existing, adapter),
            retry_config,
            refresh_handler,
            on_record_synced=on_record_synced,
        )
        ctx = merge_contexts(ctx, push.context)
        requires_reauth = push.requires_reauth

    if mapping_supports_pull(mapping):
        pull = await execute_pull_sync(
            PullSyncInput(connection, mapping, adapter, retry_config, refresh_handler)
        )
        ctx = merge_contexts(ctx, pull.context)
        error = pull.error
        pulled_records = pull.data
        requires_reauth = requires_reauth or pull.error_code == TOKEN_REFRESH_FAILED

    return _mapping_result(mapping, ctx, error, pulled_records), ctx, requires_reauth


async def execute_full_sync(
    sync_input: FullSyncInput,
    get_mapping_records: MappingRecordsLoader,
    get_existing_mappings: ExistingMappingsLoader,
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig | None = None,
    refresh_handler: RefreshHandler | None = None,
    *,
    mapping_timeout: float | None = None,
) -> FullSyncOutcome:
    """
    Run every active mapping of a connection, one after another.

    Push mappings load their records and id mappings through the given loaders, pull
    mappings fetch from the adapter and bidirectional mappings do both. A mapping that
    raises is reported as failed with INTERNAL_ERROR and the run moves on. A mapping that
    exceeds mapping_timeout fails with TIMEOUT but keeps the counts of records it had
    already synced.
    """
    prepared = prepare_full_sync(sync_input)
    ctx = prepared.context
    mapping_results: list[MappingSyncResult] = []
    requires_reauth = False

    with LogContext(connection_id=sync_input.connection.id, sync_type=SyncType.FULL_SYNC.value):
        logger.info(
            "Starting full sync",
            active_mappings=len(prepared.active_mappings),
            skipped_mappings=len(sync_input.mappings) - len(prepared.active_mappings),
        )

        for mapping in prepared.active_mappings:
            synced: list[RecordSyncResult] = []

            async def collect(result: RecordSyncResult) -> None:
                synced.append(result)

            try:
                result, mapping_ctx, mapping_reauth = await with_timeout(
                    _sync_mapping(
                        sync_input.connection,
                        mapping,
                        get_mapping_records,
                        get_existing_mappings,
                        adapter,
                        retry_config,
                        refresh_handler,
                        on_record_synced=collect,
                    ),
                    mapping_timeout,
                    f"full sync mapping {mapping.id}",
                )
            except SyncTimeoutError as e:
                # Records pushed before the deadline still count
                message = str(e)
                logger.error(f"Full sync timed out for mapping {mapping.id}: {message}")
                mapping_ctx = update_context_from_results(
                    create_sync_context(sync_input.connection.id, mapping.id, SyncType.FULL_SYNC),
                    synced,
                )
                mapping_ctx = record_failure(mapping_ctx, mapping.id, TIMEOUT, message)
                mapping_results.append(_mapping_result(mapping, mapping_ctx, error=message))
                ctx = merge_contexts(ctx, mapping_ctx)
                continue
            except Exception as e:
                message = str(e) or type(e).__name__
                logger.error(f"Full sync failed for mapping {mapping.id}: {message}")
                mapping_results.append(
                    MappingSyncResult(mapping_id=mapping.id, success=False, error=message)
                )
                ctx = record_failure(ctx, mapping.id, INTERNAL_ERROR, message)
                continue

            mapping_results.append(result)
            ctx = merge_contexts(ctx, mapping_ctx)
            requires_reauth = requires_reauth or mapping_reauth

        _log_run_finished("Full sync finished", ctx)

    return FullSyncOutcome(
        mapping_results=mapping_results, context=ctx, requires_reauth=requires_reauth
    )


# =====================================================
# Retry failed records
# =====================================================


async def retry_failed_sync(sync_input: RetryFailedInput) -> RetryFailedOutcome:
    """
    Re-push only the records that failed in an earlier run.

    Failed ids default to the record ids in the log's error details. Records are routed to
    update when an id mapping exists (for instance one created by a partial earlier run).
    Failed ids with no matching local record are reported in skipped_record_ids.
    """
    log = sync_input.sync_log
    failed_ids = (
        list(sync_input.failed_record_ids)
        if sync_input.failed_record_ids is not None
        else get_failed_record_ids(log)
    )
    failed_set = set(failed_ids)

    with LogContext(
        connection_id=log.connection_id,
        mapping_id=log.mapping_id,
        sync_type=log.sync_type.value,
        sync_log_id=log.id,
    ):
        ctx = create_sync_context(log.connection_id, log.mapping_id, log.sync_type)

        retry_records: list[SyncRecord] = []
        found: set[str] = set()
        for record in sync_input.records:
            local_id = extract_record_id(record, sync_input.record_id_field)
            if local_id is None or local_id not in failed_set:
                continue
            data = (
                apply_field_mappings(record, sync_input.mapping.field_mappings)
                if sync_input.mapping
                else dict(record)
            )
            retry_records.append(SyncRecord(local_id=local_id, data=data))
            found.add(local_id)

        skipped = [record_id for record_id in failed_ids if record_id not in found]
        if skipped:
            logger.warning(
                f"{len(skipped)} failed records no longer exist locally", skipped=skipped
            )

        lookup = build_mapping_lookup(
            sync_input.existing_mappings,
            local_table=sync_input.mapping.local_table if sync_input.mapping else None,
            connection_id=log.connection_id,
        )

        logger.info("Retrying failed records", records=len(retry_records))
        results = await process_sync_batch(
            retry_records,
            lookup,
            sync_input.adapter,
            sync_input.retry_config,
            _refresh_fn_for(sync_input.connection, sync_input.refresh_handler),
        )
        ctx = update_context_from_results(ctx, results)

        _log_run_finished("Retry of failed records finished", ctx)
        return RetryFailedOutcome(results=results, context=ctx, skipped_record_ids=skipped)
