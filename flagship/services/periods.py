from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone


@dataclass(frozen=True)
class PeriodBoundaries:
    period_start: datetime
    period_end: datetime


def to_utc(value: datetime) -> datetime:
    # Treat naive datetimes as UTC so callers never leak local time into buckets.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def calculate_period_boundaries(timestamp: datetime) -> PeriodBoundaries:
    """Return the UTC calendar month containing ``timestamp``.

    ``period_start`` is the first instant of the month and ``period_end`` the
    last millisecond of its final day (23:59:59.999). Both depend only on the
    UTC year and month, so any two timestamps in the same month map to
    identical boundaries.
    """
    ts = to_utc(timestamp)
    period_start = datetime(ts.year, ts.month, 1, tzinfo=timezone.utc)
    if ts.month == 12:
        next_start = datetime(ts.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        next_start = datetime(ts.year, ts.month + 1, 1, tzinfo=timezone.utc)
    period_end = next_start - timedelta(milliseconds=1)
    return PeriodBoundaries(period_start=period_start, period_end=period_end)
