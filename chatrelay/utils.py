"""
Utility functions for the chat relay.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Fixed-width format so ISO strings sort lexically in time order
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

EPOCH_TIMESTAMP = "1970-01-01T00:00:00.000000Z"


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as a UTC ISO-8601 string with microseconds."""
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts the 'Z' suffix and any precision Python's fromisoformat
    understands, so rows restored from the remote store parse too.
    """
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_timestamp(value: str) -> str:
    """Re-render any ISO-8601 timestamp in the store's fixed-width format."""
    return format_timestamp(parse_timestamp(value))


def next_timestamp(last: Optional[str], now: Optional[datetime] = None) -> str:
    """
    Return the timestamp to assign to the next stored message.

    The result is the current time, bumped to one microsecond past `last`
    when the clock has not moved forward (or went backwards).

    Args:
        last: Timestamp of the most recent stored message, if any
        now: Current time override (tests)

    Returns:
        ISO-8601 UTC timestamp string strictly greater than `last`
    """
    current = now or datetime.now(timezone.utc)
    if last:
        floor = parse_timestamp(last) + timedelta(microseconds=1)
        if current < floor:
            logger.debug(f"Clock did not advance past {last}, bumping timestamp")
            current = floor
    return format_timestamp(current)
