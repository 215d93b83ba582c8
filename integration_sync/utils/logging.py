"""
Structured logging for the sync engine, built on structlog.

Importing this module configures logging once for the process. Output is rendered for a
terminal when SYNC_ENVIRONMENT is 'local' and as one JSON object per line everywhere else;
LOG_RENDERER ('console' or 'json') overrides that choice and LOG_LEVEL sets the root level.

    logger = get_logger(__name__)
    logger.info("Sync batch finished", records_processed=12, records_failed=1)

Run-scoped fields live in structlog contextvars, so every line emitted while a run is in
flight carries them, including lines from libraries that log through the stdlib `logging`
module:

    with LogContext(connection_id=connection.id, mapping_id=mapping.id, sync_type="push"):
        ...

add_log_context() binds fields until they are removed or cleared explicitly.
"""

from __future__ import annotations

import logging
import os
from collections.abc import MutableMapping
from typing import Any

import newrelic.agent
import structlog
import structlog.contextvars

from integration_sync.utils.config import get_sync_environment

_ERROR_METHODS = frozenset({"error", "critical"})


def _is_local_environment() -> bool:
    return get_sync_environment() == "local"


def _wants_console_output() -> bool:
    override = os.getenv("LOG_RENDERER", "").lower()
    if override in ("console", "json"):
        return override == "console"
    return _is_local_environment()


def newrelic_error_processor(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Forward error and critical events to New Relic, leaving the event itself unchanged.

    notice_error is a no-op when the agent is not running.
    """
    if method_name in _ERROR_METHODS:
        newrelic.agent.notice_error()
    return event_dict


def _get_log_renderer() -> structlog.types.Processor:
    if not _wants_console_output():
        return structlog.processors.JSONRenderer()

    return structlog.dev.ConsoleRenderer(
        colors=True,
        pad_event=0,
        sort_keys=True,
        event_key="message",
        exception_formatter=structlog.dev.plain_traceback,
    )


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.EventRenamer("message"),
        newrelic_error_processor,
    ]


def configure_logging() -> None:
    """Route both structlog and stdlib logging through a single root handler."""
    shared = _shared_processors()

    # filter_by_level needs add_log_level to have run first
    structlog.configure(
        processors=[
            *shared,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=_get_log_renderer(),
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO))


configure_logging()


def add_log_context(**kwargs: Any) -> None:
    structlog.contextvars.bind_contextvars(**kwargs)


def remove_log_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_log_context() -> None:
    """Drop every bound field, e.g. before starting an unrelated run on the same task."""
    structlog.contextvars.clear_contextvars()


# Binds fields for the duration of a with-block and restores the previous values on exit
LogContext = structlog.contextvars.bound_contextvars


def get_logger(name: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger(name, **kwargs)
