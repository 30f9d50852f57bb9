"""UTC calendar-month periods expressed as epoch-millisecond half-open ranges."""

from datetime import datetime, timezone
from typing import Optional

from .models import Period


def to_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_millis(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_millis() -> int:
    return to_millis(utc_now())


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    """Move ``delta`` months from (year, month), rolling over year boundaries."""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def month_range_utc(year: int, month: int) -> Period:
    if not 1 <= month <= 12:
        raise ValueError(f"month must be in 1..12, got {month}")

    next_year, next_month = shift_month(year, month, 1)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    end = datetime(next_year, next_month, 1, tzinfo=timezone.utc)
    return Period(year=year, month=month, period_start=to_millis(start), period_end=to_millis(end))


def _utc_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def current_month_range_utc(now: Optional[datetime] = None) -> Period:
    now = _utc_now(now)
    return month_range_utc(now.year, now.month)


def trailing_periods(n: int, now: Optional[datetime] = None) -> list[Period]:
    """The ``n`` months before the current one, most recent first."""
    now = _utc_now(now)
    periods = []
    for i in range(1, n + 1):
        year, month = shift_month(now.year, now.month, -i)
        periods.append(month_range_utc(year, month))
    return periods


def previous_month(now: Optional[datetime] = None) -> tuple[int, int]:
    now = _utc_now(now)
    return shift_month(now.year, now.month, -1)


def period_key(timestamp_ms: int) -> tuple[int, int]:
    dt = from_millis(timestamp_ms)
    return dt.year, dt.month
