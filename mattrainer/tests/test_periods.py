"""Billing period arithmetic and UTC handling."""
from datetime import datetime, timedelta, timezone

from mattrainer.features.billing.periods import (
    add_months,
    as_utc,
    isoformat_or_none,
    next_paid_until,
    trial_window_end,
)

T0 = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_add_months_keeps_day_and_time():
    assert add_months(T0) == datetime(2025, 4, 10, 12, 0, tzinfo=timezone.utc)


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2025, 1, 31, tzinfo=timezone.utc)) == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert add_months(datetime(2024, 1, 31, tzinfo=timezone.utc)) == datetime(2024, 2, 29, tzinfo=timezone.utc)


def test_add_months_rolls_year():
    assert add_months(datetime(2025, 12, 15, tzinfo=timezone.utc)) == datetime(2026, 1, 15, tzinfo=timezone.utc)


def test_next_paid_until_from_now_when_empty():
    assert next_paid_until(T0, None, None) == add_months(T0)


def test_next_paid_until_extends_future_paid_window():
    paid_until = T0 + timedelta(days=10)
    assert next_paid_until(T0, paid_until, None) == add_months(paid_until)


def test_next_paid_until_starts_after_trial():
    trial_end = T0 + timedelta(days=5)
    assert next_paid_until(T0, None, trial_end) == add_months(trial_end)


def test_next_paid_until_ignores_past_windows():
    assert next_paid_until(T0, T0 - timedelta(days=40), T0 - timedelta(days=60)) == add_months(T0)


def test_as_utc_tags_naive_values():
    naive = datetime(2025, 3, 10, 12, 0)
    assert as_utc(naive) == T0
    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(None) is None


def test_as_utc_converts_offsets():
    plus_three = timezone(timedelta(hours=3))
    assert as_utc(datetime(2025, 3, 10, 15, 0, tzinfo=plus_three)) == T0


def test_trial_window_end():
    assert trial_window_end(T0, 7) == T0 + timedelta(days=7)


def test_isoformat_uses_z_suffix():
    assert isoformat_or_none(T0) == "2025-03-10T12:00:00Z"
    assert isoformat_or_none(None) is None
