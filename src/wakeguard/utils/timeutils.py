"""Server-side time authority.

All correctness decisions use ``Clock.now()`` on the server. Client clocks are
only compared against it for diagnostics.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from ..config import settings
from .logging import setup_logger

logger = setup_logger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""

    def skew_check(self, client_time: datetime) -> int:
        """Milliseconds the server is ahead of ``client_time`` (negative if behind)."""
        offset_ms = int((self.now() - as_utc(client_time)).total_seconds() * 1000)
        if abs(offset_ms) > settings.max_clock_skew_seconds * 1000:
            logger.warning(
                f"Client clock skew detected: offset={offset_ms}ms "
                f"client={as_utc(client_time).isoformat()}"
            )
        return offset_ms


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def parse_wake_time(wake_time: str) -> time:
    """Parse a local ``HH:MM`` wake time."""
    try:
        hours, minutes = (int(part) for part in wake_time.strip().split(":"))
        return time(hour=hours, minute=minutes)
    except ValueError as e:
        raise ValueError(f"Wake time must be HH:MM, got {wake_time!r}") from e


def local_wake_time_to_utc(wake_time: str, tz_name: str, on_date: date) -> datetime:
    """Convert ``HH:MM`` on ``on_date`` in ``tz_name`` to a UTC instant."""
    local = datetime.combine(on_date, parse_wake_time(wake_time), tzinfo=ZoneInfo(tz_name))
    return local.astimezone(timezone.utc)


def next_wake_window(
    wake_time: str,
    now: datetime,
    tz_name: Optional[str] = None,
    duration_minutes: Optional[int] = None,
) -> Tuple[datetime, datetime]:
    """Return the next ``(start_at, end_at)`` window for a local wake time.

    The window starts at the first occurrence of ``wake_time`` strictly after
    ``now`` in the user's zone and lasts ``duration_minutes``.
    """
    tz_name = tz_name or settings.default_timezone
    duration = duration_minutes if duration_minutes is not None else settings.default_challenge_minutes
    if duration <= 0:
        raise ValueError("Challenge window must be positive")

    local_today = as_utc(now).astimezone(ZoneInfo(tz_name)).date()
    start_at = local_wake_time_to_utc(wake_time, tz_name, local_today)
    if start_at <= as_utc(now):
        start_at = local_wake_time_to_utc(wake_time, tz_name, local_today + timedelta(days=1))
    return start_at, start_at + timedelta(minutes=duration)


def is_within_window(start_at: datetime, end_at: datetime, now: datetime) -> bool:
    return as_utc(start_at) <= as_utc(now) <= as_utc(end_at)
