"""
Error-code vocabulary exchanged with external adapters, and its classification.

Every code falls in exactly one class:
- retryable: transport, timeout, rate-limit and 5xx-class failures, recovered with backoff
- token_expired: authentication expiry, recovered with a one-shot token refresh
- non_retryable: everything else (validation, not-found, forbidden, other 4xx), surfaced as-is
"""

from enum import Enum

# Synthetic code returned when a token refresh fails during a retry run.
TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"

# Labels used by this package for failures that carry no adapter code.
INTERNAL_ERROR = "INTERNAL_ERROR"
UNKNOWN_ERROR = "UNKNOWN_ERROR"
NOT_SUPPORTED = "NOT_SUPPORTED"

NETWORK_ERROR = "NETWORK_ERROR"
TIMEOUT = "TIMEOUT"
VALIDATION_ERROR = "VALIDATION_ERROR"

RETRYABLE_ERROR_CODES = frozenset(
    {
        NETWORK_ERROR,
        TIMEOUT,
        "RATE_LIMITED",
        "SERVER_ERROR",
        "ECONNRESET",
        "ECONNREFUSED",
        "ETIMEDOUT",
        "500",
        "502",
        "503",
        "504",
        "429",
    }
)

TOKEN_EXPIRED_ERROR_CODES = frozenset(
    {
        "TOKEN_EXPIRED",
        "401",
        "UNAUTHORIZED",
        "INVALID_TOKEN",
    }
)

# Not consulted by classification (anything unlisted is non-retryable); kept as the
# documented vocabulary adapters are expected to use for client errors.
NON_RETRYABLE_ERROR_CODES = frozenset(
    {
        VALIDATION_ERROR,
        "NOT_FOUND",
        "FORBIDDEN",
        "BAD_REQUEST",
        "400",
        "403",
        "404",
        "422",
    }
)


class ErrorClass(str, Enum):
    RETRYABLE = "retryable"
    TOKEN_EXPIRED = "token_expired"
    NON_RETRYABLE = "non_retryable"


def normalize_error_code(error_code: str | int | None) -> str | None:
    if error_code is None:
        return None
    normalized = str(error_code).strip().upper()
    return normalized or None


def classify_error_code(error_code: str | int | None) -> ErrorClass:
    """Classify an adapter error code. Pure lookup, independent of attempt number."""
    code = normalize_error_code(error_code)
    if code in RETRYABLE_ERROR_CODES:
        return ErrorClass.RETRYABLE
    if code in TOKEN_EXPIRED_ERROR_CODES:
        return ErrorClass.TOKEN_EXPIRED
    return ErrorClass.NON_RETRYABLE


def is_retryable_error(error_code: str | int | None) -> bool:
    return classify_error_code(error_code) is ErrorClass.RETRYABLE


def is_token_expired_error(error_code: str | int | None) -> bool:
    return classify_error_code(error_code) is ErrorClass.TOKEN_EXPIRED


def error_code_for_exception(exc: Exception) -> str:
    """Map an exception raised by adapter code onto the shared vocabulary."""
    if isinstance(exc, TimeoutError):
        return TIMEOUT
    if isinstance(exc, OSError):
        # ConnectionError and its subclasses are OSErrors
        return NETWORK_ERROR
    return INTERNAL_ERROR
