"""
Session calendar for one exchange.

All computations happen in one fixed civil timezone (IST by default) no matter
what the host timezone is. Session boundaries are closed intervals: a tick at
exactly the opening or closing minute is in-session.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Set
from zoneinfo import ZoneInfo

ONE_MINUTE_MS = 60_000
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionClockValue:
    """A wall-clock reading in the exchange timezone."""
    weekday: int  # 0 = Monday
    hour: int
    minute: int
    second: int

    @property
    def minutes_since_midnight(self) -> int:
        return self.hour * 60 + self.minute


class MarketClock:
    """
    Is-open test, trading-day identifier and minute buckets for one session window.
    """

    def __init__(
        self,
        timezone_name: str = "Asia/Kolkata",
        session_start_min: int = 9 * 60 + 15,
        session_end_min: int = 15 * 60 + 30,
        holidays: Optional[Iterable[date]] = None,
        now_fn: Callable[[], datetime] = _utcnow
    ):
        """
        Initialize the clock.

        Args:
            timezone_name: IANA timezone of the exchange
            session_start_min: Session open, minutes since local midnight (inclusive)
            session_end_min: Session close, minutes since local midnight (inclusive)
            holidays: Dates on which the market stays closed
            now_fn: Source of the current time (timezone-aware)
        """
        self.timezone = ZoneInfo(timezone_name)
        self.session_start_min = session_start_min
        self.session_end_min = session_end_min
        self._holidays: Set[date] = set(holidays or [])
        self._now_fn = now_fn

    def current_time(self) -> datetime:
        return self._now_fn()

    def _local(self, t: Optional[datetime]) -> datetime:
        t = t if t is not None else self._now_fn()
        if t.tzinfo is None:
            # naive datetimes are taken as UTC
            t = t.replace(tzinfo=timezone.utc)
        return t.astimezone(self.timezone)

    def now(self, t: Optional[datetime] = None) -> SessionClockValue:
        """Decompose ``t`` (default: now) into exchange-local wall-clock fields."""
        local = self._local(t)
        return SessionClockValue(
            weekday=local.weekday(),
            hour=local.hour,
            minute=local.minute,
            second=local.second,
        )

    def is_holiday(self, t: Optional[datetime] = None) -> bool:
        return self._local(t).date() in self._holidays

    def is_open(self, t: Optional[datetime] = None) -> bool:
        """
        Check whether the session is open at ``t``.

        Returns:
            True on a weekday (and non-holiday) between session start and end, inclusive
        """
        value = self.now(t)
        if value.weekday >= 5 or self.is_holiday(t):
            return False
        return self.session_start_min <= value.minutes_since_midnight <= self.session_end_min

    def trading_day(self, t: Optional[datetime] = None) -> str:
        """Civil date of ``t`` in the exchange timezone, ``YYYY-MM-DD``."""
        return self._local(t).strftime("%Y-%m-%d")

    @staticmethod
    def minute_bucket(epoch_ms: int) -> int:
        """Epoch-minute index: ``floor(epoch_ms / 60000)``."""
        return int(epoch_ms) // ONE_MINUTE_MS

    @staticmethod
    def epoch_ms(t: datetime) -> int:
        if t.tzinfo is None:
            t = t.replace(tzinfo=timezone.utc)
        return (t - _EPOCH) // timedelta(milliseconds=1)

    def ms_until_next_minute_boundary(self, t: Optional[datetime] = None) -> int:
        """Milliseconds until the next whole minute; a full minute when exactly on one."""
        t = t if t is not None else self._now_fn()
        return ONE_MINUTE_MS - (self.epoch_ms(t) % ONE_MINUTE_MS)

    def format_local(self, t: Optional[datetime] = None) -> str:
        """``dd/mm/yyyy, HH:MM:SS`` in the exchange timezone."""
        return self._local(t).strftime("%d/%m/%Y, %H:%M:%S")

    def get_session_window(self) -> dict:
        return {
            "timezone": str(self.timezone),
            "open": f"{self.session_start_min // 60:02d}:{self.session_start_min % 60:02d}",
            "close": f"{self.session_end_min // 60:02d}:{self.session_end_min % 60:02d}",
            "holidays": sorted(d.isoformat() for d in self._holidays),
        }
