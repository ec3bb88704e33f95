"""
Clock Module

Single injectable source of "now" for classification, arrears and
reconciliation, so date-dependent results are deterministic in tests.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone
from typing import Union
from zoneinfo import ZoneInfo


class Clock(ABC):
    """Abstract clock"""

    @abstractmethod
    def now(self) -> datetime:
        """Current timezone-aware datetime"""
        pass

    def today(self) -> date:
        """Current calendar date in the clock's timezone"""
        return self.now().date()


class SystemClock(Clock):
    """Wall clock in the portfolio's business timezone"""

    def __init__(self, tz_name: str = "Africa/Lagos"):
        self.tz = ZoneInfo(tz_name)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock(Clock):
    """Clock frozen at a given instant; advance() moves it forward"""

    def __init__(self, value: Union[date, datetime]):
        self._now = self._coerce(value)

    @staticmethod
    def _coerce(value: Union[date, datetime]) -> datetime:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, days: int = 0, **kwargs) -> None:
        self._now = self._now + timedelta(days=days, **kwargs)

    def set(self, value: Union[date, datetime]) -> None:
        self._now = self._coerce(value)


def as_date(value: Union[date, datetime]) -> date:
    """Strip the time of day, leaving a plain date"""
    if isinstance(value, datetime):
        return value.date()
    return value
