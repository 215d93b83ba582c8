"""
Batch sync processor.

Pushes a batch of records to an external adapter one at a time, in input order, with
each record running through the retry engine. A record's failure never stops the batch:
the result list always has exactly one entry per input record, in input order.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence

from integration_sync.sync.adapter import ExternalApiAdapter
from integration_sync.sync.error_codes import TIMEOUT
from integration_sync.sync.models import (
    AdapterResult,
    RecordOperation,
    RecordSyncResult,
    RetryConfig,
    SyncRecord,
)
from integration_sync.sync.retry import OperationResult, TokenRefreshFn, retry_with_backoff
from integration_sync.utils.config import get_batch_timeout_seconds
from integration_sync.utils.error_handling import ErrorCounter, record_exception_and_ignore
from integration_sync.utils.logging import get_logger
from integration_sync.utils.timeout import SyncTimeoutError, with_timeout

logger = get_logger(__name__)

RecordSyncedCallback = Callable[[RecordSyncResult], Awaitable[None]]


def _to_operation_result(outcome: AdapterResult) -> OperationResult[str]:
    return OperationResult(
        success=outcome.success,
        data=outcome.external_id,
        error=outcome.error,
        error_code=outcome.error_code,
    )


async def sync_record(
    record: SyncRecord,
    external_id: str | None,
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig | None = None,
    on_token_expired: TokenRefreshFn | None = None,
) -> RecordSyncResult:
    """Create or update a single record, depending on whether it already has an external id."""
    if external_id is not None:
        operation = RecordOperation.UPDATE

        async def push() -> OperationResult[str]:
            outcome = await adapter.update_record(external_id, record.data)
            # Updates keep the known external id when the adapter does not echo it back
            if outcome.success and outcome.external_id is None:
                return OperationResult(success=True, data=external_id)
            return _to_operation_result(outcome)

    else:
        operation = RecordOperation.CREATE

        async def push() -> OperationResult[str]:
            return _to_operation_result(await adapter.create_record(record.data))

    result = await retry_with_backoff(push, retry_config, on_token_expired)

    if result.success:
        return RecordSyncResult(
            local_id=record.local_id,
            success=True,
            operation=operation,
            external_id=result.data,
        )

    return RecordSyncResult(
        local_id=record.local_id,
        success=False,
        operation=operation,
        external_id=external_id,
        error=result.error,
        error_code=result.error_code,
    )


def _timed_out_result(
    record: SyncRecord, lookup: Mapping[str, str], error: str
) -> RecordSyncResult:
    external_id = lookup.get(record.local_id)
    return RecordSyncResult(
        local_id=record.local_id,
        success=False,
        operation=RecordOperation.UPDATE if external_id is not None else RecordOperation.CREATE,
        external_id=external_id,
        error=error,
        error_code=TIMEOUT,
    )


async def process_sync_batch(
    records: Sequence[SyncRecord],
    existing_mappings: Mapping[str, str],
    adapter: ExternalApiAdapter,
    retry_config: RetryConfig | None = None,
    on_token_expired: TokenRefreshFn | None = None,
    *,
    on_record_synced: RecordSyncedCallback | None = None,
    timeout: float | None = None,
) -> list[RecordSyncResult]:
    """
    Sync a batch of records sequentially.

    Args:
        records: Records to push, in order
        existing_mappings: Local id to external id; mapped records are updated, others created
        adapter: External system adapter
        retry_config: Retry bounds for each record
        on_token_expired: Refresh callback handed to the retry engine for each record
        on_record_synced: Called after each record (e.g. to persist a new id mapping). Its
            failures are logged and do not affect the batch.
        timeout: Wall-clock bound for the whole batch in seconds. Defaults to
            SYNC_BATCH_TIMEOUT_SECONDS; unbounded when neither is set.

    Returns:
        One RecordSyncResult per input record, in input order.
    """
    if timeout is None:
        timeout = get_batch_timeout_seconds()

    # Batch-local copy so a local id created earlier in the batch is updated, not created twice
    lookup = dict(existing_mappings)
    results: list[RecordSyncResult] = []
    callback_counter: ErrorCounter = {}

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    timed_out = False
    timeout_error = f"Batch timed out after {timeout}s"

    for record in records:
        if deadline is not None and not timed_out and loop.time() >= deadline:
            timed_out = True
            logger.warning(f"Batch timed out after {timeout}s, skipping remaining records")

        if timed_out:
            results.append(_timed_out_result(record, lookup, timeout_error))
            continue

        remaining = deadline - loop.time() if deadline is not None else None
        try:
            result = await with_timeout(
                sync_record(
                    record,
                    lookup.get(record.local_id),
                    adapter,
                    retry_config,
                    on_token_expired,
                ),
                remaining,
                f"sync record {record.local_id}",
            )
        except SyncTimeoutError:
            timed_out = True
            results.append(_timed_out_result(record, lookup, timeout_error))
            continue

        if result.success and result.operation is RecordOperation.CREATE and result.external_id:
            lookup[record.local_id] = result.external_id

        results.append(result)

        if on_record_synced is not None:
            with record_exception_and_ignore(
                logger, f"Record synced callback failed for {record.local_id}", callback_counter
            ):
                await on_record_synced(result)

    failed = sum(1 for result in results if not result.success)
    logger.info(
        "Sync batch finished",
        records_processed=len(results),
        records_failed=failed,
        callbacks_failed=callback_counter.get("failed", 0),
        timed_out=timed_out,
    )
    return results
