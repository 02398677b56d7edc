"""Per-entity balance and flow orchestration.

This module provides the FlowOrchestrator that walks entity x address x
chain x asset, dispatches each unit of work to the registered chain adapter
and collects a portfolio snapshot plus weekly/daily flow buckets per entity.

A failed unit of work is logged and recorded as a :class:`FlowFailure`; it
never aborts the entity or the run, and it never writes a synthetic zero.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import UTC, tzinfo
from typing import Any, Literal, TypeVar

from redis.asyncio import Redis

from reserve_flow_tracker.chains.base import ChainAdapter
from reserve_flow_tracker.chains.registry import ChainRegistry, build_registry
from reserve_flow_tracker.config import Settings, get_settings
from reserve_flow_tracker.flows.accumulator import DailyBucket, FlowAccumulator, WeeklyBucket
from reserve_flow_tracker.flows.windows import Window
from reserve_flow_tracker.models import UNKNOWN_ENTITY, AddressRow, Asset, Portfolio
from reserve_flow_tracker.net.http import HttpClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Literal["balance", "weekly", "daily"]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(settings: Settings | None = None) -> None:
    """Apply the configured log level to the root logger."""
    settings = settings or get_settings()
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    logging.getLogger().setLevel(settings.get_logging_level())


def group_by_entity(rows: Iterable[AddressRow]) -> dict[str, list[AddressRow]]:
    """Group rows by entity in first-seen order; a blank entity becomes ``unknown``."""
    groups: dict[str, list[AddressRow]] = {}
    for row in rows:
        groups.setdefault(row.entity_or_unknown, []).append(row)
    return groups


@dataclass(frozen=True)
class FlowFailure:
    """One unit of work that produced no (or only partial) data."""

    entity: str
    chain: str
    address: str
    symbol: str
    operation: Operation
    error: str


@dataclass
class EntityReport:
    """Best-effort results for one entity.

    ``weekly`` / ``daily`` are ``None`` when that granularity was not requested.
    """

    entity: str
    portfolio: Portfolio
    weekly: WeeklyBucket | None = None
    daily: DailyBucket | None = None
    failures: list[FlowFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class OrchestratorStats:
    """Counters for one orchestrator lifetime."""

    entities: int = 0
    addresses: int = 0
    calls: int = 0
    failures: int = 0
    skipped_rows: int = 0


class FlowOrchestrator:
    """Dispatch address rows to chain adapters and collect per-entity reports.

    Entities and addresses are processed sequentially. Each adapter call runs
    under its own deadline; a call that times out keeps whatever it already
    merged into the entity's buckets and is recorded as a failure.

    Example:
        ```python
        settings = get_settings()
        async with FlowOrchestrator.from_settings(settings) as orchestrator:
            reports = await orchestrator.run(
                rows,
                weekly=weekly_window(4),
                daily=daily_window(settings.report.tzinfo),
            )
        ```
    """

    def __init__(
        self,
        registry: ChainRegistry,
        *,
        tz: tzinfo = UTC,
        only_symbols: Collection[str] = (),
        call_timeout_seconds: float | None = None,
        http: HttpClient | None = None,
        redis: Redis | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            registry: Adapters keyed by chain name.
            tz: Reporting timezone for daily bucket keys.
            only_symbols: Symbol allow-list; empty means every symbol.
            call_timeout_seconds: Deadline for one adapter call (None disables it).
            http: Shared HTTP client owned by this orchestrator, closed on aclose().
            redis: Redis client owned by this orchestrator, closed on aclose().
        """
        self._registry = registry
        self._tz = tz
        self._only_symbols = frozenset(s.upper() for s in only_symbols)
        self._call_timeout = call_timeout_seconds
        self._http = http
        self._redis = redis
        self._stats = OrchestratorStats()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> FlowOrchestrator:
        """Build the shared HTTP client, optional Redis and every configured adapter."""
        settings = settings or get_settings()
        http = HttpClient(
            timeout_seconds=settings.http.timeout_seconds,
            user_agent=settings.http.user_agent,
        )
        redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
        registry = build_registry(settings, http=http, redis=redis)
        return cls(
            registry,
            tz=settings.report.tzinfo,
            only_symbols=settings.report.only_symbols,
            call_timeout_seconds=settings.report.call_timeout_seconds,
            http=http,
            redis=redis,
        )

    @property
    def stats(self) -> OrchestratorStats:
        return self._stats

    def is_allowed(self, symbol: str) -> bool:
        return not self._only_symbols or symbol.upper() in self._only_symbols

    def _allowed(self, assets: Iterable[Asset]) -> list[Asset]:
        return [a for a in assets if self.is_allowed(a.symbol)]

    def _adapter_for(self, row: AddressRow) -> ChainAdapter | None:
        adapter = self._registry.get(row.chain)
        if adapter is None:
            self._stats.skipped_rows += 1
            logger.warning(
                "No adapter for chain=%s (entity=%s address=%s), skipping",
                row.chain,
                row.entity_or_unknown,
                row.address,
            )
        return adapter

    async def _with_deadline(self, call: Awaitable[T]) -> T:
        self._stats.calls += 1
        if self._call_timeout is None:
            return await call
        async with asyncio.timeout(self._call_timeout):
            return await call

    def _record(
        self,
        failures: list[FlowFailure],
        row: AddressRow,
        asset: Asset,
        operation: Operation,
        error: BaseException,
    ) -> None:
        message = str(error) or type(error).__name__
        if isinstance(error, TimeoutError):
            message = f"timed out after {self._call_timeout}s"
        failures.append(
            FlowFailure(
                entity=row.entity_or_unknown,
                chain=row.chain,
                address=row.address,
                symbol=asset.symbol,
                operation=operation,
                error=message,
            )
        )
        self._stats.failures += 1

    async def compute_portfolio(
        self,
        entity: str,
        rows: Iterable[AddressRow],
        failures: list[FlowFailure],
    ) -> Portfolio:
        """Sum fresh balances of every allowed asset over the entity's addresses."""
        portfolio = Portfolio(entity=entity)
        for row in rows:
            adapter = self._adapter_for(row)
            if adapter is None:
                continue
            assets = self._allowed(adapter.assets)
            if not assets:
                continue

            def on_error(asset: Asset, error: Exception, row: AddressRow = row) -> None:
                self._record(failures, row, asset, "balance", error)

            try:
                snapshots = await self._with_deadline(
                    adapter.compute_balances(row.address, assets, on_error=on_error)
                )
            except Exception as e:
                logger.error(
                    "Balances failed entity=%s chain=%s kind=%s address=%s: %s",
                    entity,
                    row.chain,
                    adapter.kind.value,
                    row.address,
                    e,
                )
                for asset in assets:
                    self._record(failures, row, asset, "balance", e)
                continue
            for snapshot in snapshots:
                portfolio.add(snapshot)
        return portfolio

    async def compute_flows(
        self,
        entity: str,
        rows: Iterable[AddressRow],
        window: Window,
        accumulator: FlowAccumulator,
        failures: list[FlowFailure],
        *,
        operation: Operation,
    ) -> None:
        """Merge every allowed asset's flows over ``window`` into ``accumulator``."""
        for row in rows:
            adapter = self._adapter_for(row)
            if adapter is None:
                continue
            for asset in self._allowed(adapter.flow_assets):
                try:
                    await self._with_deadline(
                        adapter.compute_flows(row.address, asset, window, accumulator)
                    )
                except Exception as e:
                    logger.error(
                        "%s flows failed entity=%s chain=%s kind=%s address=%s asset=%s: %s",
                        operation,
                        entity,
                        row.chain,
                        adapter.kind.value,
                        row.address,
                        asset.symbol,
                        e,
                    )
                    self._record(failures, row, asset, operation, e)

    async def run_entity(
        self,
        entity: str,
        rows: list[AddressRow],
        *,
        weekly: Window | None = None,
        daily: Window | None = None,
        balances: bool = True,
    ) -> EntityReport:
        logger.info("Processing entity=%s addresses=%d", entity, len(rows))
        self._stats.entities += 1
        self._stats.addresses += len(rows)

        report = EntityReport(entity=entity, portfolio=Portfolio(entity=entity))
        if balances:
            report.portfolio = await self.compute_portfolio(entity, rows, report.failures)

        if weekly is not None:
            report.weekly = {}
            await self.compute_flows(
                entity,
                rows,
                weekly,
                FlowAccumulator(weekly=report.weekly, tz=self._tz),
                report.failures,
                operation="weekly",
            )

        if daily is not None:
            report.daily = {}
            await self.compute_flows(
                entity,
                rows,
                daily,
                FlowAccumulator(daily=report.daily, tz=self._tz),
                report.failures,
                operation="daily",
            )

        logger.info(
            "Finished entity=%s holdings=%d failures=%d",
            entity,
            len(report.portfolio.holdings),
            len(report.failures),
        )
        return report

    async def run(
        self,
        rows: Iterable[AddressRow],
        *,
        weekly: Window | None = None,
        daily: Window | None = None,
        balances: bool = True,
    ) -> list[EntityReport]:
        """Process every entity and return one report each, in first-seen order."""
        groups = group_by_entity(rows)
        logger.info("Grouped entities: %d", len(groups))
        if weekly is not None:
            logger.info("Weekly window %s", weekly)
        if daily is not None:
            logger.info("Daily window %s tz=%s", daily, self._tz)

        return [
            await self.run_entity(entity, entity_rows, weekly=weekly, daily=daily, balances=balances)
            for entity, entity_rows in groups.items()
        ]

    async def aclose(self) -> None:
        """Close adapters and the shared clients this orchestrator owns."""
        await self._registry.aclose()
        if self._http is not None:
            await self._http.aclose()
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning("Error closing Redis: %s", e)

    async def __aenter__(self) -> FlowOrchestrator:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()
