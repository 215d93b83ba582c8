"""
Retry and backoff engine for remote sync operations.

An operation is one remote attempt that reports its outcome as an OperationResult rather
than raising. retry_with_backoff runs it up to max_retries + 1 times:

- retryable failures sleep min(base_delay * 2**n, max_delay) and try again
- a token-expired failure triggers the refresh callback at most once per call; a
  successful refresh re-runs the operation without consuming a retry slot, a failed one
  ends the run with TOKEN_REFRESH_FAILED
- anything else is returned immediately

Usage:
    async def push() -> OperationResult[str]:
        outcome = await adapter.create_record(payload)
        return OperationResult(success=outcome.success, data=outcome.external_id, ...)

    result = await retry_with_backoff(push, RetryConfig(max_retries=3), refresh_fn)
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from integration_sync.sync.error_codes import (
    TOKEN_REFRESH_FAILED,
    ErrorClass,
    classify_error_code,
    error_code_for_exception,
)
from integration_sync.sync.models import RetryConfig, TokenRefreshResult
from integration_sync.utils.config import (
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    get_default_retry_config,
)
from integration_sync.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a single remote attempt."""

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of a full retry run."""

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    retry_count: int = 0
    token_refreshed: bool = False


RetryableOperation = Callable[[], Awaitable[OperationResult[T]]]
TokenRefreshFn = Callable[[], Awaitable[TokenRefreshResult]]


def calculate_retry_delay(
    retry_count: int,
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
) -> float:
    """Exponential backoff delay in seconds for a 0-based retry count, capped at max_delay."""
    count = max(0, retry_count)
    return min(base_delay * (2**count), max_delay)


async def sleep(seconds: float) -> None:
    """Suspend the current task between attempts. Cancelling the task interrupts the wait."""
    await asyncio.sleep(seconds)


async def _attempt(operation: RetryableOperation[T], attempt: int) -> OperationResult[T]:
    try:
        return await operation()
    except Exception as e:
        error_code = error_code_for_exception(e)
        logger.warning(
            f"Sync operation raised {type(e).__name__} on attempt {attempt + 1}",
            error=str(e),
            error_code=error_code,
        )
        return OperationResult(
            success=False, error=str(e) or type(e).__name__, error_code=error_code
        )


async def _refresh_token(on_token_expired: TokenRefreshFn) -> TokenRefreshResult:
    try:
        return await on_token_expired()
    except Exception as e:
        logger.error(f"Token refresh callback raised: {e}")
        return TokenRefreshResult(success=False, error=str(e) or type(e).__name__)


async def retry_with_backoff(
    operation: RetryableOperation[T],
    config: RetryConfig | None = None,
    on_token_expired: TokenRefreshFn | None = None,
) -> RetryResult[T]:
    """
    Run an operation with exponential backoff and a one-shot token refresh.

    Args:
        operation: Zero-argument coroutine function performing one remote attempt
        config: Retry bounds; the configured default is used when omitted
        on_token_expired: Optional refresh callback, invoked at most once per call

    Returns:
        RetryResult with the final outcome, ordinary retries consumed and whether a
        token refresh happened. Never raises for remote failures.
    """
    config = config or get_default_retry_config()

    retry_count = 0
    attempt = 0
    refresh_attempted = False
    token_refreshed = False

    while True:
        result = await _attempt(operation, attempt)
        attempt += 1

        if result.success:
            return RetryResult(
                success=True,
                data=result.data,
                retry_count=retry_count,
                token_refreshed=token_refreshed,
            )

        error_class = classify_error_code(result.error_code)

        if error_class is ErrorClass.TOKEN_EXPIRED and on_token_expired and not refresh_attempted:
            refresh_attempted = True
            logger.info("Access token expired, refreshing before retrying operation")
            refresh = await _refresh_token(on_token_expired)
            if not refresh.success:
                logger.warning(
                    "Token refresh failed; connection needs reauthorization",
                    error=refresh.error,
                )
                return RetryResult(
                    success=False,
                    error=refresh.error or "Token refresh failed",
                    error_code=TOKEN_REFRESH_FAILED,
                    retry_count=retry_count,
                    token_refreshed=False,
                )
            token_refreshed = True
            continue

        if error_class is ErrorClass.RETRYABLE and retry_count < config.max_retries:
            delay = calculate_retry_delay(retry_count, config.base_delay, config.max_delay)
            logger.warning(
                f"Retryable error {result.error_code}, waiting {delay}s before retry "
                f"{retry_count + 1}/{config.max_retries}",
                error=result.error,
            )
            await sleep(delay)
            retry_count += 1
            continue

        if error_class is ErrorClass.RETRYABLE:
            logger.warning(
                f"Max retries reached after {retry_count} retries",
                error_code=result.error_code,
                error=result.error,
            )

        return RetryResult(
            success=False,
            error=result.error,
            error_code=result.error_code,
            retry_count=retry_count,
            token_refreshed=token_refreshed,
        )
