"""Clinic wall clock.

Slot dates, slot times and booking times are all stored as naive values in
the clinic's local zone (``CLINIC_TIMEZONE``). Everything that compares
against "now" goes through a ``Clock`` so it can be pinned in tests.
"""
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from slotbook.core.config import settings


class Clock:
    def __init__(self, tz_name: str | None = None):
        self.tz = ZoneInfo(tz_name or settings.CLINIC_TIMEZONE)

    def now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone(self.tz).replace(tzinfo=None)

    def today(self) -> date:
        return self.now().date()

    def to_local(self, dt: datetime) -> datetime:
        """Aware datetimes are converted into the clinic zone; naive ones are taken as already local."""
        if dt.tzinfo is None:
            return dt
        return dt.astimezone(self.tz).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock pinned to a given local instant; used by the sweeper tests and local demos."""

    def __init__(self, at: datetime, tz_name: str | None = None):
        super().__init__(tz_name)
        self.at = self.to_local(at)

    def now(self) -> datetime:
        return self.at

    def advance(self, **kwargs) -> None:
        self.at = self.at + timedelta(**kwargs)


def combine(day: date, t: time) -> datetime:
    return datetime.combine(day, t)


default_clock = Clock()


def get_clock() -> Clock:
    # FastAPI dependency; tests override it with a FixedClock
    return default_clock
