"""
Token lifecycle management for integration connections.

Token status is derived from the connection, never stored:
- expired: an expiry timestamp is set and is not in the future
- valid: not expired (a connection without an expiry never expires)
- requires_reauth: expired and there is no refresh token to recover with
"""

from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from integration_sync.sync.models import IntegrationConnection, TokenRefreshResult, TokenStatus
from integration_sync.sync.retry import TokenRefreshFn
from integration_sync.utils.config import get_token_expiry_buffer_seconds
from integration_sync.utils.logging import get_logger
from integration_sync.utils.timestamp import ensure_utc, utc_now

logger = get_logger(__name__)

RefreshHandler = Callable[[IntegrationConnection], Awaitable[TokenRefreshResult]]


def check_token_status(
    connection: IntegrationConnection, now: datetime | None = None
) -> TokenStatus:
    now = ensure_utc(now or utc_now())
    expires_at = connection.token_expires_at

    expired = expires_at is not None and ensure_utc(expires_at) <= now
    return TokenStatus(
        valid=not expired,
        expired=expired,
        requires_reauth=expired and not connection.refresh_token,
    )


def is_token_expiring_soon(
    expires_at: datetime | None,
    buffer_seconds: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Check if a token is expired or will expire within the buffer.

    An unknown expiry counts as expiring, so schedulers refresh proactively rather than
    discover the expiry mid-batch.
    """
    if expires_at is None:
        return True
    if buffer_seconds is None:
        buffer_seconds = get_token_expiry_buffer_seconds()
    now = ensure_utc(now or utc_now())
    return ensure_utc(expires_at) <= now + timedelta(seconds=buffer_seconds)


def create_token_refresh_fn(
    connection: IntegrationConnection, refresh_handler: RefreshHandler
) -> TokenRefreshFn | None:
    """
    Bind a refresh handler to a connection for use by the retry engine.

    Returns None when the connection has no refresh token; callers should then route the
    user through interactive reauthorization instead of automated refresh.
    """
    if not connection.refresh_token:
        return None

    async def refresh() -> TokenRefreshResult:
        logger.info("Refreshing access token", connection_id=connection.id)
        try:
            result = await refresh_handler(connection)
        except Exception as e:
            logger.error(f"Token refresh failed for connection {connection.id}: {e}")
            return TokenRefreshResult(success=False, error=str(e) or type(e).__name__)

        if result.success:
            logger.info("Access token refreshed", connection_id=connection.id)
        else:
            logger.warning(
                "Token refresh rejected", connection_id=connection.id, error=result.error
            )
        return result

    return refresh


def prepare_reauth_required_update(error: str | None = None) -> dict[str, Any]:
    """Connection update for a connection whose token could not be refreshed."""
    message = error or "Token refresh failed"
    return {
        "is_active": False,
        "last_error": f"Reauthorization required: {message}",
    }
