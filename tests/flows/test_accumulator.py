"""Tests for decimal flow buckets."""

import itertools
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from reserve_flow_tracker.flows.accumulator import (
    AssetFlow,
    FlowAccumulator,
    FlowBucket,
    add_daily,
    add_weekly,
    day_key,
    merge_buckets,
    week_key,
)

TAIPEI = ZoneInfo("Asia/Taipei")
TS = datetime(2024, 2, 1, 12, 0, tzinfo=UTC)


class TestAssetFlow:
    def test_absent_is_not_zero(self) -> None:
        cell = AssetFlow()
        assert cell.inflow is None
        assert cell.outflow is None
        assert cell.net is None

    def test_net(self) -> None:
        cell = AssetFlow()
        cell.add(True, Decimal("0.8"))
        cell.add(False, Decimal("0.2"))
        assert cell.net == Decimal("0.6")

    def test_net_with_only_outflow(self) -> None:
        cell = AssetFlow()
        cell.add(False, Decimal("3"))
        assert cell.inflow is None
        assert cell.net == Decimal("-3")

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ValueError, match="non-negative"):
            AssetFlow().add(True, Decimal("-1"))


class TestBucketKeys:
    def test_week_key_is_iso_week(self) -> None:
        assert week_key(TS) == "2024-W05"

    def test_week_key_year_boundary(self) -> None:
        # 2024-12-30 belongs to ISO week 1 of 2025
        assert week_key(datetime(2024, 12, 30, tzinfo=UTC)) == "2025-W01"

    def test_day_key_uses_reporting_timezone(self) -> None:
        late_utc = datetime(2024, 2, 1, 20, 0, tzinfo=UTC)
        assert day_key(late_utc) == "2024-02-01"
        assert day_key(late_utc, TAIPEI) == "2024-02-02"

    def test_naive_timestamp_rejected(self) -> None:
        with pytest.raises(ValueError):
            week_key(datetime(2024, 2, 1))


class TestAddFunctions:
    def test_add_weekly_creates_cells(self) -> None:
        bucket: FlowBucket = {}
        add_weekly(bucket, "BTC", TS, True, Decimal("0.5"))
        add_weekly(bucket, "BTC", TS, True, Decimal("0.3"))
        assert bucket["BTC"]["2024-W05"].inflow == Decimal("0.8")
        assert bucket["BTC"]["2024-W05"].outflow is None

    def test_add_daily_with_timezone(self) -> None:
        bucket: FlowBucket = {}
        add_daily(bucket, "USDT", datetime(2024, 2, 1, 20, 0, tzinfo=UTC), False, Decimal("5"), tz=TAIPEI)
        assert bucket == {"USDT": {"2024-02-02": AssetFlow(inflow=None, outflow=Decimal("5"))}}


class TestFlowAccumulator:
    def test_feeds_both_granularities(self) -> None:
        weekly: FlowBucket = {}
        daily: FlowBucket = {}
        acc = FlowAccumulator(weekly=weekly, daily=daily, tz=TAIPEI)
        acc.add_inflow("ETH", TS, Decimal("1"))
        acc.add_outflow("ETH", TS, Decimal("0.25"))
        assert weekly["ETH"]["2024-W05"].net == Decimal("0.75")
        assert daily["ETH"]["2024-02-01"].net == Decimal("0.75")

    def test_weekly_only(self) -> None:
        weekly: FlowBucket = {}
        acc = FlowAccumulator(weekly=weekly)
        acc.add_inflow("SOL", TS, Decimal("2"))
        assert acc.daily is None
        assert weekly["SOL"]["2024-W05"].inflow == Decimal("2")


class TestMerge:
    FLOWS = [
        ("BTC", TS, True, Decimal("0.1")),
        ("BTC", TS + timedelta(days=1), False, Decimal("0.02")),
        ("BTC", TS + timedelta(days=8), True, Decimal("0.000001")),
        ("USDT", TS, True, Decimal("1000000.123456")),
        ("USDT", TS, False, Decimal("0.000001")),
    ]

    def test_order_independent(self) -> None:
        results = []
        for order in itertools.permutations(self.FLOWS):
            bucket: FlowBucket = {}
            for symbol, ts, is_inflow, amount in order:
                add_weekly(bucket, symbol, ts, is_inflow, amount)
            results.append(bucket)
        assert all(r == results[0] for r in results)

    def test_merge_per_worker_buckets(self) -> None:
        single: FlowBucket = {}
        for symbol, ts, is_inflow, amount in self.FLOWS:
            add_weekly(single, symbol, ts, is_inflow, amount)

        left: FlowBucket = {}
        right: FlowBucket = {}
        for i, (symbol, ts, is_inflow, amount) in enumerate(self.FLOWS):
            add_weekly(left if i % 2 else right, symbol, ts, is_inflow, amount)

        assert merge_buckets(left, right) == single

    def test_merge_keeps_absent_fields_absent(self) -> None:
        into: FlowBucket = {}
        other: FlowBucket = {"BTC": {"2024-W05": AssetFlow(inflow=Decimal("1"))}}
        merge_buckets(into, other)
        assert into["BTC"]["2024-W05"].outflow is None
