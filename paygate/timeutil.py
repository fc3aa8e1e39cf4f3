import math
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Normalize a datetime to aware UTC.

    SQLite returns naive datetimes; Postgres returns aware ones.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts):
    """Unix seconds (as sent by Stripe) -> aware datetime, or None."""
    if ts is None or isinstance(ts, bool):
        return None
    try:
        return datetime.fromtimestamp(int(ts), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def seconds_until(moment, now):
    """Whole seconds remaining until `moment`, rounded up, at least 1."""
    remaining = (as_utc(moment) - as_utc(now)).total_seconds()
    return max(1, math.ceil(remaining))
