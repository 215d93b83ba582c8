"""Best-effort side effects around a sync run.

Persisting an id mapping or notifying a caller after a record syncs must never change
that record's outcome. Failures in such hooks are logged, reported to New Relic and
counted, then dropped.
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Literal, TypedDict

import newrelic.agent
import structlog

AnyLogger = logging.Logger | structlog.BoundLogger


class ErrorCounter(TypedDict, total=False):
    successful: int
    failed: int


def _bump(counter: ErrorCounter, key: Literal["successful", "failed"]) -> None:
    counter[key] = counter.get(key, 0) + 1


@contextmanager
def record_exception_and_ignore(
    logger: AnyLogger, context: str, counter: ErrorCounter
) -> Generator[None]:
    """
    Run the body as a best-effort hook and tally the outcome in `counter`.

    `context` prefixes the logged error, e.g. "Record synced callback failed for inv-1".
    Cancellation is a BaseException and passes through untouched.
    """
    try:
        yield
    except Exception as e:
        logger.error(f"{context}: {e}")
        newrelic.agent.record_exception()
        _bump(counter, "failed")
    else:
        _bump(counter, "successful")
