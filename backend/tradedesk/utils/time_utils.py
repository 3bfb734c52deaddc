"""
Time helpers.

Timestamps are stored as naive UTC datetimes (SQLite has no tz support).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Anything this far from "now" is treated as a bad clock on the sender side
_MAX_SKEW_YEARS = 10


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_signal_time(value: Any) -> Optional[datetime]:
    """
    Parse an alert timestamp (ISO string, unix seconds or unix milliseconds).

    Returns None for missing or unparseable values and for times more than
    ten years away from now.
    """
    if value is None or value == "":
        return None

    parsed: Optional[datetime] = None
    try:
        if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
            number = float(value)
            # Milliseconds if it's past ~2001 in ms
            if number > 1_000_000_000_000:
                number = number / 1000.0
            parsed = datetime.fromtimestamp(number, tz=timezone.utc)
        elif isinstance(value, str):
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Unparseable signal timestamp {value!r}: {e}")
        return None

    if parsed is None:
        return None

    parsed = to_naive_utc(parsed)
    if abs(parsed.year - utcnow().year) > _MAX_SKEW_YEARS:
        logger.warning(f"Signal timestamp {value!r} out of range, ignoring")
        return None
    return parsed
