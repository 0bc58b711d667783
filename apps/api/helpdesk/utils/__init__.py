"""Utility modules."""

from helpdesk.utils.time import age_seconds, parse_timestamp, utc_now

__all__ = [
    "age_seconds",
    "parse_timestamp",
    "utc_now",
]
