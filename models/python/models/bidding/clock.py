"""Time sources for the bidding engine.

Every start/end comparison the engine makes goes through a ``Clock`` so that
tests can move time forward instead of sleeping.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """A clock that only moves when told to.

    Usage::

        clock = ManualClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        clock.advance(minutes=5)
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime.now(timezone.utc)
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        """Move forward by a ``timedelta(**kwargs)`` and return the new time."""
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, moment: datetime) -> None:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        self._now = moment
