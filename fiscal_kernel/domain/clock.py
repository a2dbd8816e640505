"""
Clock -- injectable time source.

Rule validity windows, effective settings, ledger close timestamps and
audit entries all read time from a Clock, never from ``datetime.now()``
or ``date.today()``.  Tests pin it with DeterministicClock so a replayed
calculation resolves the same rules.

All times are timezone-aware UTC.  ``today()`` is the UTC calendar date;
fiscal dates supplied by callers (``effective_date``) are taken as given.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    def today(self) -> date:
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    ``now()`` keeps returning the same instant until ``advance()`` or
    ``set_time()`` is called.
    """

    DEFAULT_START = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        self._now = self._aware(start or self.DEFAULT_START)

    @staticmethod
    def _aware(value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware datetime")
        return value.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set_time(self, value: datetime) -> None:
        self._now = self._aware(value)

    def advance(self, seconds: float = 1, *, days: int = 0) -> datetime:
        """Move forward and return the new time."""
        self._now += timedelta(days=days, seconds=seconds)
        return self._now
