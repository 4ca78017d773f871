"""Timestamp parsing utilities for connectors."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_iso_timestamp(timestamp: str) -> datetime:
    """Parse ISO 8601 timestamp, handling Z suffix. Naive values are taken as UTC."""
    if timestamp.endswith("Z"):
        timestamp = timestamp[:-1] + "+00:00"
    parsed = datetime.fromisoformat(timestamp)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def slack_ts_to_decimal(ts: str) -> Decimal:
    """Exact numeric value of a Slack ts ("1712345678.000200"), for ordering."""
    try:
        value = Decimal(ts)
    except InvalidOperation:
        raise ValueError(f"Invalid Slack timestamp: {ts!r}")
    if not value.is_finite() or value < 0:
        raise ValueError(f"Invalid Slack timestamp: {ts!r}")
    return value


def parse_slack_ts(ts: str) -> datetime:
    """Convert a Slack ts to an aware UTC datetime without float rounding.

    Slack ts values carry microsecond precision ("seconds.micros"). Going through float loses
    the last digits for current epochs, which can reorder replies posted in the same second, so
    the whole and fractional parts are converted separately. Digits beyond microseconds are
    truncated.
    """
    value = slack_ts_to_decimal(ts)
    seconds = int(value)
    micros = int((value - seconds) * 1_000_000)
    return datetime.fromtimestamp(seconds, tz=UTC) + timedelta(microseconds=micros)
