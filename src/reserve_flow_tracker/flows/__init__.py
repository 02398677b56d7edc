"""Flow accumulation layer - decimal buckets, windows and unit conversion."""

from reserve_flow_tracker.flows.accumulator import (
    AssetFlow,
    DailyBucket,
    FlowAccumulator,
    FlowBucket,
    WeeklyBucket,
    add_daily,
    add_weekly,
    day_key,
    merge_buckets,
    week_key,
)
from reserve_flow_tracker.flows.units import scale_units, to_raw_units
from reserve_flow_tracker.flows.windows import Window, daily_window, weekly_window

__all__ = [
    "AssetFlow",
    "DailyBucket",
    "FlowAccumulator",
    "FlowBucket",
    "WeeklyBucket",
    "Window",
    "add_daily",
    "add_weekly",
    "daily_window",
    "day_key",
    "merge_buckets",
    "scale_units",
    "to_raw_units",
    "week_key",
    "weekly_window",
]
