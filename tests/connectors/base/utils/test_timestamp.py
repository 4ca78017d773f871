from datetime import UTC, datetime
from decimal import Decimal

import pytest

from connectors.base.utils import parse_iso_timestamp, parse_slack_ts, slack_ts_to_decimal, utcnow


class TestParseIsoTimestamp:
    def test_standard_iso_format(self):
        result = parse_iso_timestamp("2024-01-15T10:30:00+00:00")
        assert result == datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)

    def test_z_suffix(self):
        result = parse_iso_timestamp("2024-01-15T10:30:00Z")
        assert result == datetime(2024, 1, 15, 10, 30, 0, tzinfo=UTC)

    def test_with_milliseconds_z_suffix(self):
        result = parse_iso_timestamp("2024-01-15T10:30:00.123Z")
        assert result == datetime(2024, 1, 15, 10, 30, 0, 123000, tzinfo=UTC)

    def test_with_offset(self):
        result = parse_iso_timestamp("2024-01-15T10:30:00-05:00")
        assert result.hour == 10
        utcoffset = result.utcoffset()
        assert utcoffset is not None
        assert utcoffset.total_seconds() == -5 * 3600

    def test_naive_value_is_utc(self):
        result = parse_iso_timestamp("2024-01-15T10:30:00")
        assert result.tzinfo is UTC

    def test_invalid_format_raises(self):
        with pytest.raises(ValueError):
            parse_iso_timestamp("not-a-timestamp")


class TestSlackTimestamps:
    def test_parse_keeps_microseconds(self):
        assert parse_slack_ts("1712345678.000200") == datetime(
            2024, 4, 5, 19, 34, 38, 200, tzinfo=UTC
        )

    def test_parse_whole_seconds(self):
        assert parse_slack_ts("1712345678") == datetime(2024, 4, 5, 19, 34, 38, tzinfo=UTC)

    def test_adjacent_ts_values_stay_ordered(self):
        first = parse_slack_ts("1712345678.000199")
        second = parse_slack_ts("1712345678.000200")
        assert first < second
        assert (second - first).microseconds == 1

    def test_decimal_is_exact(self):
        assert slack_ts_to_decimal("1712345678.000200") == Decimal("1712345678.000200")

    @pytest.mark.parametrize("ts", ["", "abc", "-1.0", "NaN", "Infinity"])
    def test_invalid_ts_raises(self, ts):
        with pytest.raises(ValueError):
            parse_slack_ts(ts)


def test_utcnow_is_aware():
    assert utcnow().tzinfo is UTC
