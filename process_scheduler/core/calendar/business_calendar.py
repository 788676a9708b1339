"""
Business calendar used for every deadline computation.

A business day is a weekday that is not a listed holiday. The holiday set is
process-wide reference data: it is read on every scheduling call and edited
rarely, so it is stored as an immutable frozenset that writers replace
wholesale under a lock. Readers never take the lock.
"""
from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Iterable, Optional, Protocol, runtime_checkable

from process_scheduler.core.model import Direction


logger = logging.getLogger(__name__)

DEFAULT_WEEKEND_DAYS: frozenset[int] = frozenset({5, 6})


@runtime_checkable
class HolidaySource(Protocol):
    def list_holidays(self) -> list[date]: ...


def require_date(d: object, name: str = "date") -> date:
    """Fail fast on anything that is not a plain calendar date."""
    if isinstance(d, datetime) or not isinstance(d, date):
        raise TypeError(f"{name} must be a datetime.date, got {type(d).__name__}")
    return d


class BusinessCalendar:
    def __init__(
        self,
        holidays: Iterable[date] = (),
        *,
        weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS,
    ) -> None:
        self._weekend_days = frozenset(weekend_days)
        if not self._weekend_days <= set(range(7)):
            raise ValueError("weekend_days must be weekday numbers 0..6 (0=Monday)")
        if len(self._weekend_days) == 7:
            raise ValueError("weekend_days cannot cover the whole week")
        self._holidays: frozenset[date] = frozenset(require_date(h, "holiday") for h in holidays)
        self._write_lock = threading.Lock()

    @classmethod
    def from_source(
        cls, source: HolidaySource, *, weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS
    ) -> BusinessCalendar:
        return cls(source.list_holidays(), weekend_days=weekend_days)

    @property
    def holidays(self) -> frozenset[date]:
        return self._holidays

    @property
    def weekend_days(self) -> frozenset[int]:
        return self._weekend_days

    def is_weekend(self, d: date) -> bool:
        return require_date(d).weekday() in self._weekend_days

    def is_holiday(self, d: date) -> bool:
        return require_date(d) in self._holidays

    def is_business_day(self, d: date) -> bool:
        if self.is_weekend(d):
            return False
        return d not in self._holidays

    def nearest_business_day(self, d: date, direction: Direction = Direction.FORWARD) -> date:
        """Return d if it is a business day, else the first business day in direction."""
        step = timedelta(days=1 if Direction(direction) is Direction.FORWARD else -1)
        current = require_date(d)
        while not self.is_business_day(current):
            current += step
        return current

    def add_holiday(self, d: date) -> None:
        require_date(d, "holiday")
        with self._write_lock:
            self._holidays = self._holidays | {d}
        logger.info("holiday added: %s", d.isoformat())

    def remove_holiday(self, d: date) -> None:
        require_date(d, "holiday")
        with self._write_lock:
            self._holidays = self._holidays - {d}
        logger.info("holiday removed: %s", d.isoformat())

    def refresh(self, source: HolidaySource) -> None:
        """Reload the holiday set from source, replacing the current one."""
        loaded = frozenset(require_date(h, "holiday") for h in source.list_holidays())
        with self._write_lock:
            self._holidays = loaded
        logger.info("holiday calendar refreshed: %d holidays", len(loaded))

    def snapshot(self) -> BusinessCalendar:
        """Independent calendar frozen at the current holiday set."""
        return BusinessCalendar(self._holidays, weekend_days=self._weekend_days)

    def holidays_in_range(self, start: date, end: date) -> list[date]:
        return sorted(h for h in self._holidays if start <= h <= end)

    def __repr__(self) -> str:
        return (
            f"BusinessCalendar(holidays={len(self._holidays)}, "
            f"weekend_days={sorted(self._weekend_days)})"
        )


def build_calendar(
    source: Optional[HolidaySource] = None, *, weekend_days: Iterable[int] = DEFAULT_WEEKEND_DAYS
) -> BusinessCalendar:
    if source is None:
        return BusinessCalendar(weekend_days=weekend_days)
    return BusinessCalendar.from_source(source, weekend_days=weekend_days)
