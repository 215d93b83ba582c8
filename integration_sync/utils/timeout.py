"""Wall-clock bounds for batch runs, single records and full-sync mappings."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from integration_sync.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SyncTimeoutError(Exception):
    def __init__(self, operation: str, timeout: float, details: str = ""):
        self.operation = operation
        self.timeout = timeout
        self.details = details
        message = f"{operation} timed out after {timeout}s"
        super().__init__(f"{message}: {details}" if details else message)


async def with_timeout(
    coro_or_func: Callable[..., Awaitable[T]] | Awaitable[T],
    timeout: float | None,
    operation_name: str,
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Await `coro_or_func`, calling it with `args` and `kwargs` first when it is a function.

    A `timeout` of None awaits without a bound. On expiry the awaitable is cancelled and
    SyncTimeoutError is raised in place of the builtin TimeoutError.
    """
    awaitable = coro_or_func(*args, **kwargs) if callable(coro_or_func) else coro_or_func
    if timeout is None:
        return await awaitable

    try:
        async with asyncio.timeout(timeout):
            return await awaitable
    except TimeoutError:
        logger.warning("Operation timed out", operation=operation_name, timeout_seconds=timeout)
        raise SyncTimeoutError(operation_name, timeout) from None
