"""Tests for token lifecycle management."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from integration_sync.sync.models import (
    IntegrationConnection,
    IntegrationType,
    Provider,
    TokenRefreshResult,
)
from integration_sync.sync.tokens import (
    check_token_status,
    create_token_refresh_fn,
    is_token_expiring_soon,
    prepare_reauth_required_update,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _connection(**overrides) -> IntegrationConnection:
    data = {
        "id": "conn-1",
        "connection_code": "XERO_MAIN",
        "connection_name": "Xero",
        "integration_type": IntegrationType.ACCOUNTING,
        "provider": Provider.XERO,
        "access_token": "access",
        "refresh_token": "refresh",
        "token_expires_at": None,
    }
    data.update(overrides)
    return IntegrationConnection(**data)


class TestCheckTokenStatus:
    def test_no_expiry_is_valid(self):
        status = check_token_status(_connection(), now=NOW)
        assert status.valid is True
        assert status.expired is False
        assert status.requires_reauth is False

    def test_future_expiry_is_valid(self):
        status = check_token_status(_connection(token_expires_at=NOW + timedelta(hours=1)), now=NOW)
        assert status.valid is True
        assert status.expired is False

    def test_expiry_equal_to_now_is_expired(self):
        status = check_token_status(_connection(token_expires_at=NOW), now=NOW)
        assert status.expired is True
        assert status.valid is False
        assert status.requires_reauth is False

    def test_expired_without_refresh_token_requires_reauth(self):
        connection = _connection(token_expires_at=NOW - timedelta(seconds=1), refresh_token=None)
        status = check_token_status(connection, now=NOW)
        assert status.expired is True
        assert status.requires_reauth is True

    def test_iso_string_expiry_is_accepted(self):
        connection = _connection(token_expires_at="2024-06-01T11:00:00Z")
        assert check_token_status(connection, now=NOW).expired is True

    @pytest.mark.parametrize("has_refresh", [True, False])
    @pytest.mark.parametrize("offset_seconds", [-3600, -1, 0, 1, 3600])
    def test_status_consistency(self, has_refresh, offset_seconds):
        connection = _connection(
            token_expires_at=NOW + timedelta(seconds=offset_seconds),
            refresh_token="refresh" if has_refresh else None,
        )
        status = check_token_status(connection, now=NOW)

        assert status.valid is not status.expired
        assert status.requires_reauth == (status.expired and not has_refresh)


class TestIsTokenExpiringSoon:
    def test_unknown_expiry_counts_as_expiring(self):
        assert is_token_expiring_soon(None, now=NOW) is True

    def test_within_buffer(self):
        assert is_token_expiring_soon(NOW + timedelta(minutes=4), buffer_seconds=300, now=NOW)

    def test_outside_buffer(self):
        assert not is_token_expiring_soon(NOW + timedelta(minutes=6), buffer_seconds=300, now=NOW)

    def test_naive_expiry_is_treated_as_utc(self):
        naive = datetime(2024, 6, 1, 12, 30)
        assert not is_token_expiring_soon(naive, buffer_seconds=60, now=NOW)


class TestCreateTokenRefreshFn:
    def test_returns_none_without_refresh_token(self):
        handler = AsyncMock()
        assert create_token_refresh_fn(_connection(refresh_token=None), handler) is None
        handler.assert_not_called()

    @pytest.mark.asyncio
    async def test_calls_handler_with_connection(self):
        connection = _connection()
        handler = AsyncMock(return_value=TokenRefreshResult(success=True))

        refresh = create_token_refresh_fn(connection, handler)
        result = await refresh()

        assert result.success is True
        handler.assert_awaited_once_with(connection)

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failed_result(self):
        handler = AsyncMock(side_effect=RuntimeError("invalid_grant"))

        refresh = create_token_refresh_fn(_connection(), handler)
        result = await refresh()

        assert result.success is False
        assert result.error == "invalid_grant"


def test_prepare_reauth_required_update():
    update = prepare_reauth_required_update("invalid_grant")
    assert update == {
        "is_active": False,
        "last_error": "Reauthorization required: invalid_grant",
    }
