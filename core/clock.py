"""Clock -- the single source of 'now' for the dispatcher and automation loops.

Production code uses SystemClock. Tests and dry runs use FrozenClock, which
only moves when told to, so timing-dependent behavior (due tasks, schedule
slots, delayed actions) can be exercised without wall-clock sleeps.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone, tzinfo
from typing import Protocol, runtime_checkable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@runtime_checkable
class Clock(Protocol):
    """Anything with a now() returning an aware UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Real wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """A manually advanced clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = ensure_utc(start) if start else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set(self, dt: datetime) -> None:
        self._now = ensure_utc(dt)

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        """Move time forward by a timedelta or timedelta keyword arguments."""
        self._now = self._now + (delta if delta is not None else timedelta(**kwargs))
        return self._now


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def load_timezone(name: str) -> tzinfo:
    """Resolve an IANA timezone name ("UTC", "Europe/Paris")."""
    if name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        raise ValueError(f"Unknown timezone: {name!r}") from None
