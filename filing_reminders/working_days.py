"""Working-day helpers: weekends and UK bank holidays are not working days."""

from __future__ import annotations

from datetime import date, timedelta
from typing import AbstractSet


def is_working_day(day: date, holidays: AbstractSet[date] = frozenset()) -> bool:
    """False on Saturday, Sunday, or any date in ``holidays``."""
    return day.weekday() < 5 and day not in holidays


def next_working_day(day: date, holidays: AbstractSet[date] = frozenset()) -> date:
    """Return ``day`` itself if it is a working day, else the first one after it."""
    while not is_working_day(day, holidays):
        day += timedelta(days=1)
    return day
