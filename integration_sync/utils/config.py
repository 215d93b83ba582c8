"""Environment-backed settings for the sync engine.

Every knob has a default, so the engine runs with an empty environment:

    SYNC_ENVIRONMENT                  'local' (default) selects console logs
    SYNC_MAX_RETRIES                  retries after the first attempt, default 3
    SYNC_RETRY_BASE_DELAY_SECONDS     first backoff delay, default 1.0
    SYNC_RETRY_MAX_DELAY_SECONDS      backoff cap, default 30.0
    SYNC_BATCH_TIMEOUT_SECONDS        wall-clock bound per batch, unset means none
    SYNC_TOKEN_EXPIRY_BUFFER_SECONDS  how early a token counts as expiring, default 300
"""

import os
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from integration_sync.sync.models import RetryConfig

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
DEFAULT_TOKEN_EXPIRY_BUFFER_SECONDS = 300


def parse_config_value(value: str) -> str | bool | int | float:
    """Coerce a raw env string to bool, int or float where it looks like one."""
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"

    for number_type in (int, float):
        try:
            return number_type(value)
        except ValueError:
            continue
    return value


def get_config_value(key: str, default: Any = None) -> Any:
    raw = os.environ.get(key)
    return default if raw is None else parse_config_value(raw)


def _get_number(key: str) -> int | float | None:
    value = get_config_value(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return value


def get_sync_environment() -> str:
    return os.environ.get("SYNC_ENVIRONMENT") or "local"


def get_default_retry_config() -> "RetryConfig":
    """Build the retry config used when callers supply none.

    Raises:
        pydantic.ValidationError: If a configured value is negative or not numeric
    """
    from integration_sync.sync.models import RetryConfig

    return RetryConfig(
        max_retries=get_config_value("SYNC_MAX_RETRIES", DEFAULT_MAX_RETRIES),
        base_delay=get_config_value(
            "SYNC_RETRY_BASE_DELAY_SECONDS", DEFAULT_RETRY_BASE_DELAY_SECONDS
        ),
        max_delay=get_config_value("SYNC_RETRY_MAX_DELAY_SECONDS", DEFAULT_RETRY_MAX_DELAY_SECONDS),
    )


def get_batch_timeout_seconds() -> float | None:
    """Wall-clock bound for one batch run, or None when batches are unbounded."""
    value = _get_number("SYNC_BATCH_TIMEOUT_SECONDS")
    if value is None or value <= 0:
        return None
    return float(value)


def get_token_expiry_buffer_seconds() -> int:
    value = _get_number("SYNC_TOKEN_EXPIRY_BUFFER_SECONDS")
    if value is None:
        return DEFAULT_TOKEN_EXPIRY_BUFFER_SECONDS
    return max(0, int(value))
