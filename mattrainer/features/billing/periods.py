"""Clock helpers and billing-period arithmetic.

All values are timezone-aware UTC. A billing period is one calendar month;
month ends clamp (Jan 31 + 1 month = Feb 28/29).
"""
import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return utc_now()
    return as_utc(now)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Tag naive datetimes as UTC, convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def add_months(value: datetime, months: int = 1) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_paid_until(
    now: datetime,
    paid_until: Optional[datetime],
    trial_ends_at: Optional[datetime],
) -> datetime:
    """Extend by one period from the latest of now, the paid window and the trial."""
    base = max(as_utc(now), as_utc(paid_until) or EPOCH, as_utc(trial_ends_at) or EPOCH)
    return add_months(base, 1)


def trial_window_end(now: datetime, trial_days: int) -> datetime:
    return as_utc(now) + timedelta(days=trial_days)


def isoformat_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat().replace("+00:00", "Z")
