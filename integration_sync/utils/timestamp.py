"""Timestamp parsing utilities for sync records and connection tokens."""

from datetime import UTC, datetime


def parse_iso_timestamp(timestamp: str) -> datetime:
    """Parse ISO 8601 timestamp, handling Z suffix.

    Raises:
        ValueError: If the string is not ISO 8601
    """
    timestamp = timestamp.strip()
    if timestamp.endswith(("Z", "z")):
        timestamp = timestamp[:-1] + "+00:00"
    return datetime.fromisoformat(timestamp)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)
