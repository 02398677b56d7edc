"""Half-open reporting windows and the standard weekly/daily window builders."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta, tzinfo


@dataclass(frozen=True)
class Window:
    """Time interval ``[start, end)``; both bounds timezone-aware."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start.tzinfo is None or self.end.tzinfo is None:
            raise ValueError("window bounds must be timezone-aware")
        if self.end < self.start:
            raise ValueError("window end must not precede start")

    def contains(self, ts: datetime) -> bool:
        return self.start <= ts < self.end

    def is_before(self, ts: datetime) -> bool:
        """True if ``ts`` precedes the window (older than ``start``)."""
        return ts < self.start

    @property
    def start_ms(self) -> int:
        return _epoch_ms(self.start)

    @property
    def end_ms(self) -> int:
        return _epoch_ms(self.end)

    def contains_ms(self, ts_ms: int) -> bool:
        return self.start_ms <= ts_ms < self.end_ms

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"


def _epoch_ms(ts: datetime) -> int:
    delta = ts - datetime(1970, 1, 1, tzinfo=UTC)
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_epoch_seconds(value: int | float) -> datetime:
    return datetime.fromtimestamp(value, tz=UTC)


def from_epoch_ms(value: int) -> datetime:
    seconds, millis = divmod(int(value), 1000)
    return datetime.fromtimestamp(seconds, tz=UTC) + timedelta(milliseconds=millis)


def weekly_window(
    weeks: int,
    *,
    now: datetime | None = None,
    start_date: date | None = None,
) -> Window:
    """Lookback of ``weeks`` weeks ending now; ``start_date`` overrides the start (UTC midnight)."""
    if weeks < 1:
        raise ValueError("weeks must be >= 1")
    end = (now or datetime.now(UTC)).astimezone(UTC)
    start = end - timedelta(days=7 * weeks)
    if start_date is not None:
        start = datetime.combine(start_date, time.min, tzinfo=UTC)
    return Window(start=start, end=end)


def daily_window(
    tz: tzinfo,
    *,
    day: date | None = None,
    now: datetime | None = None,
) -> Window:
    """The local calendar ``day`` in ``tz`` (today by default), expressed in UTC."""
    if day is None:
        day = (now or datetime.now(UTC)).astimezone(tz).date()
    local_start = datetime.combine(day, time.min, tzinfo=tz)
    local_end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return Window(start=local_start.astimezone(UTC), end=local_end.astimezone(UTC))
