from datetime import date

import pytest

from billsync.config import settings
from billsync.services.due_dates import add_months, days_until_due, next_due_date, urgency


@pytest.mark.parametrize("days_left, expected", [
    (-1, "overdue"),
    (0, "urgent"),
    (3, "urgent"),
    (4, "soon"),
    (7, "soon"),
    (30, "safe"),
    (31, "distant"),
])
def test_urgency_buckets(days_left, expected):
    assert urgency(days_left) == expected


def test_days_until_due_is_negative_when_overdue():
    assert days_until_due(date(2026, 10, 15), date(2026, 10, 17)) == -2


def test_add_months_clamps_to_month_end():
    assert add_months(date(2027, 1, 31), 1) == date(2027, 2, 28)
    assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)
    assert add_months(date(2026, 12, 15), 1) == date(2027, 1, 15)
    assert add_months(date(2026, 1, 15), -1) == date(2025, 12, 15)


def test_next_due_date_per_interval():
    start = date(2026, 10, 17)
    assert next_due_date(start, "weekly") == date(2026, 10, 24)
    assert next_due_date(start, "biweekly") == date(2026, 10, 31)
    assert next_due_date(start, "monthly") == date(2026, 11, 17)
    assert next_due_date(start, "yearly") == date(2027, 10, 17)


def test_next_due_date_keeps_preferred_day_of_month():
    assert next_due_date(date(2027, 2, 28), "monthly", day_of_month=31) == date(2027, 3, 31)
    assert next_due_date(date(2028, 2, 29), "yearly") == date(2029, 2, 28)


def test_next_due_date_rejects_unknown_interval():
    with pytest.raises(ValueError):
        next_due_date(date(2026, 10, 17), "daily")


def test_urgent_window_follows_settings(monkeypatch):
    monkeypatch.setattr(settings, "urgent_days", 5)

    assert urgency(5) == "urgent"
    assert urgency(6) == "soon"
