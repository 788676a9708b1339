"""Signed business-day arithmetic on top of BusinessCalendar.

add_business_days is not invertible: add_business_days(add_business_days(d, n), -n)
returns d only when d is itself a business day, because the stepping loop never
lands on a non-business day.
"""
from __future__ import annotations

from datetime import date, timedelta

from process_scheduler.core.calendar.business_calendar import BusinessCalendar, require_date
from process_scheduler.core.model import Direction


def add_business_days(
    calendar: BusinessCalendar,
    start: date,
    days: int,
    *,
    zero_offset_direction: Direction = Direction.FORWARD,
) -> date:
    """Move `days` business days from start (negative moves backward).

    With days == 0 the start date is returned unchanged when it is a business
    day; otherwise it is rounded to the nearest business day in
    zero_offset_direction (forward unless configured otherwise).
    """
    require_date(start, "start")
    if isinstance(days, bool) or not isinstance(days, int):
        raise TypeError(f"days must be an int, got {type(days).__name__}")

    if days == 0:
        return calendar.nearest_business_day(start, zero_offset_direction)

    step = timedelta(days=1 if days > 0 else -1)
    remaining = abs(days)
    current = start
    while remaining > 0:
        current += step
        if calendar.is_business_day(current):
            remaining -= 1
    return current


def subtract_business_days(
    calendar: BusinessCalendar,
    start: date,
    days: int,
    *,
    zero_offset_direction: Direction = Direction.BACKWARD,
) -> date:
    return add_business_days(calendar, start, -days, zero_offset_direction=zero_offset_direction)


def business_days_between(calendar: BusinessCalendar, start: date, end: date) -> int:
    """Business days in (start, end]; negative when end is before start."""
    require_date(start, "start")
    require_date(end, "end")
    if start == end:
        return 0
    if end < start:
        return -business_days_between(calendar, end, start)

    count = 0
    current = start + timedelta(days=1)
    while current <= end:
        if calendar.is_business_day(current):
            count += 1
        current += timedelta(days=1)
    return count
