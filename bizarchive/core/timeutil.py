"""BizArchive - Time helpers shared by windows, cursors and queries."""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

WINDOW_GRANULARITY = timedelta(hours=1)
CURSOR_INCREMENT = timedelta(milliseconds=1)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Grail returns nanosecond precision; datetime keeps microseconds.
_FRACTION = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def floor_hour(value: datetime) -> datetime:
    return ensure_utc(value).replace(minute=0, second=0, microsecond=0)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with a trailing Z, as DQL's toTimestamp() expects."""
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an event timestamp. Returns None when absent or unparseable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        return None
