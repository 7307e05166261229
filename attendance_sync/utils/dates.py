"""
Date helpers shared by the store and the validators.

Device punches are naive local datetimes, so attendance dates are plain
calendar days of those values. Job bookkeeping uses naive UTC.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Tuple


def utcnow() -> datetime:
    """Naive UTC now, the form SQLite hands back for DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_local_naive(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def day_range(day: date) -> Tuple[date, date]:
    """Half-open [day, next day) range as the record store queries it."""
    return day, day + timedelta(days=1)


def elapsed_ms(started: float, finished: float) -> int:
    return int((finished - started) * 1000)
