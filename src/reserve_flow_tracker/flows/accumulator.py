"""Decimal flow buckets keyed by asset symbol and period.

Buckets are plain dicts mutated in place. They are not safe for concurrent
writers: give each worker its own accumulator and combine them afterwards
with :func:`merge_buckets`, or serialize every ``add`` call.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, tzinfo
from decimal import Decimal

from reserve_flow_tracker.flows import units


@dataclass
class AssetFlow:
    """Inflow/outflow magnitudes for one (asset, period) cell.

    ``None`` means no flow was observed, which is distinct from an explicit zero.
    """

    inflow: Decimal | None = None
    outflow: Decimal | None = None

    @property
    def net(self) -> Decimal | None:
        if self.inflow is None and self.outflow is None:
            return None
        return units.DECIMAL_CONTEXT.subtract(self.inflow or Decimal(0), self.outflow or Decimal(0))

    def add(self, is_inflow: bool, amount: Decimal) -> None:
        if amount < 0:
            raise ValueError("flow amounts must be non-negative; direction is is_inflow")
        if is_inflow:
            self.inflow = amount if self.inflow is None else units.add(self.inflow, amount)
        else:
            self.outflow = amount if self.outflow is None else units.add(self.outflow, amount)


# symbol -> bucket key -> cell
FlowBucket = dict[str, dict[str, AssetFlow]]
WeeklyBucket = FlowBucket
DailyBucket = FlowBucket


def _require_aware(ts: datetime) -> None:
    if ts.tzinfo is None:
        raise ValueError("timestamp must be timezone-aware")


def week_key(ts: datetime) -> str:
    """ISO calendar week of the UTC timestamp, e.g. ``2024-W05``."""
    _require_aware(ts)
    iso = ts.astimezone(UTC).isocalendar()
    return f"{iso.year}-W{iso.week:02d}"


def day_key(ts: datetime, tz: tzinfo = UTC) -> str:
    """Calendar day in the reporting timezone, e.g. ``2024-02-01``."""
    _require_aware(ts)
    return ts.astimezone(tz).strftime("%Y-%m-%d")


def _add(bucket: FlowBucket, symbol: str, key: str, is_inflow: bool, amount: Decimal) -> None:
    cells = bucket.setdefault(symbol, {})
    cell = cells.get(key)
    if cell is None:
        cell = cells[key] = AssetFlow()
    cell.add(is_inflow, amount)


def add_weekly(
    bucket: WeeklyBucket,
    symbol: str,
    ts: datetime,
    is_inflow: bool,
    amount: Decimal,
) -> None:
    _add(bucket, symbol, week_key(ts), is_inflow, amount)


def add_daily(
    bucket: DailyBucket,
    symbol: str,
    ts: datetime,
    is_inflow: bool,
    amount: Decimal,
    *,
    tz: tzinfo = UTC,
) -> None:
    _add(bucket, symbol, day_key(ts, tz), is_inflow, amount)


def merge_buckets(into: FlowBucket, other: FlowBucket) -> FlowBucket:
    """Add every populated cell of ``other`` into ``into`` (in place) and return it."""
    for symbol, cells in other.items():
        for key, cell in cells.items():
            if cell.inflow is not None:
                _add(into, symbol, key, True, cell.inflow)
            if cell.outflow is not None:
                _add(into, symbol, key, False, cell.outflow)
    return into


class FlowAccumulator:
    """Flow sink handed to chain adapters.

    Every flow is merged into whichever of the weekly and daily buckets the
    caller supplied, so one adapter pass can feed both granularities.
    """

    def __init__(
        self,
        *,
        weekly: WeeklyBucket | None = None,
        daily: DailyBucket | None = None,
        tz: tzinfo = UTC,
    ) -> None:
        self.weekly = weekly
        self.daily = daily
        self.tz = tz

    def add(self, symbol: str, ts: datetime, is_inflow: bool, amount: Decimal) -> None:
        if self.weekly is not None:
            add_weekly(self.weekly, symbol, ts, is_inflow, amount)
        if self.daily is not None:
            add_daily(self.daily, symbol, ts, is_inflow, amount, tz=self.tz)

    def add_inflow(self, symbol: str, ts: datetime, amount: Decimal) -> None:
        self.add(symbol, ts, True, amount)

    def add_outflow(self, symbol: str, ts: datetime, amount: Decimal) -> None:
        self.add(symbol, ts, False, amount)
