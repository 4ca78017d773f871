"""Utility functions for connectors."""

from connectors.base.utils.timestamp import (
    parse_iso_timestamp,
    parse_slack_ts,
    slack_ts_to_decimal,
    utcnow,
)

__all__ = [
    "parse_iso_timestamp",
    "parse_slack_ts",
    "slack_ts_to_decimal",
    "utcnow",
]
