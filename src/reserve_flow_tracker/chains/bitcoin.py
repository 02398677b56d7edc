"""Bitcoin balances and flows from Esplora-compatible REST providers.

Flows are computed from each transaction's inputs (spent outputs previously
owned by the address, counted as outflow) and outputs (new outputs assigned
to the address, counted as inflow). History is paged newest-first with the
last transaction id of each page as continuation cursor; several provider
base URLs can be configured for failover.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from reserve_flow_tracker.chains.base import (
    ChainAdapter,
    ConfigurationError,
    ConsecutiveErrorLimitError,
    PaginationLimitError,
    PaginationLoopError,
    PaginationStuckError,
    ProviderError,
    UnsupportedAssetError,
)
from reserve_flow_tracker.chains.models import EsploraAddress, EsploraOutput, EsploraTx
from reserve_flow_tracker.flows.accumulator import FlowAccumulator
from reserve_flow_tracker.flows.units import scale_units
from reserve_flow_tracker.flows.windows import Window, from_epoch_seconds
from reserve_flow_tracker.models import Asset, ChainKind, Snapshot
from reserve_flow_tracker.net.http import DecodeError, HttpClient, HttpClientError, HTTPStatusError
from reserve_flow_tracker.net.retry import BackoffPolicy, BackoffState

logger = logging.getLogger(__name__)

BTC = Asset(symbol="BTC", decimals=8)

DEFAULT_PAGE_DELAY_SECONDS = 0.25


@dataclass(frozen=True)
class PaginationLimits:
    """Hard ceilings that guarantee history paging terminates."""

    max_consecutive_errors: int = 40
    max_no_progress: int = 3
    max_pages: int = 10_000


@dataclass
class PaginationCursor:
    """Transient paging state for one ``compute_flows`` call."""

    provider_count: int
    backoff: BackoffState = field(default_factory=BackoffState)
    last_seen: str | None = None
    rotation: int = 0
    consecutive_errors: int = 0
    no_progress: int = 0
    pages: int = 0
    seen_tails: set[str] = field(default_factory=set)
    counted: set[str] = field(default_factory=set)

    def provider_order(self) -> list[int]:
        """Provider indices to try for the next page, starting at the current rotation."""
        return [(self.rotation + i) % self.provider_count for i in range(self.provider_count)]

    def record_success(self, provider_index: int) -> None:
        self.rotation = provider_index
        self.consecutive_errors = 0
        self.backoff.reset()

    def record_failure(self, limits: PaginationLimits, error: Exception) -> None:
        self.consecutive_errors += 1
        if self.consecutive_errors >= limits.max_consecutive_errors:
            raise ConsecutiveErrorLimitError(
                f"esplora consecutive errors reached {limits.max_consecutive_errors}: "
                f"last error: {error}"
            ) from error

    def advance(self, tail: str, limits: PaginationLimits) -> None:
        """Move the cursor to ``tail``; raise if paging stopped making progress."""
        if tail == self.last_seen:
            self.no_progress += 1
            if self.no_progress >= limits.max_no_progress:
                raise PaginationStuckError(f"esplora pagination stuck at {tail}")
            return
        self.no_progress = 0
        if tail in self.seen_tails:
            raise PaginationLoopError(f"esplora pagination loop at {tail}")
        self.seen_tails.add(tail)
        self.last_seen = tail


class BitcoinAdapter(ChainAdapter):
    """UTXO adapter over one or more Esplora base URLs.

    Example:
        ```python
        adapter = BitcoinAdapter(http, ["https://blockstream.info/api"])
        snapshot = await adapter.compute_balance("bc1q...", BTC)
        ```
    """

    kind = ChainKind.BITCOIN

    def __init__(
        self,
        http: HttpClient,
        base_urls: Sequence[str],
        *,
        chain: str = "bitcoin",
        backoff: BackoffPolicy | None = None,
        limits: PaginationLimits | None = None,
        page_delay_seconds: float = DEFAULT_PAGE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(chain)
        self._http = http
        self._base_urls = tuple(u.strip().rstrip("/") for u in base_urls if u.strip())
        self._backoff = backoff or BackoffPolicy()
        self._limits = limits or PaginationLimits()
        self._page_delay = page_delay_seconds
        self._sleep = sleep
        self._rng = rng

    @property
    def assets(self) -> tuple[Asset, ...]:
        return (BTC,)

    def _require_providers(self) -> None:
        if not self._base_urls:
            raise ConfigurationError("no esplora endpoint configured")

    def _check_asset(self, asset: Asset) -> None:
        if asset.symbol != BTC.symbol or not asset.is_native:
            raise UnsupportedAssetError(f"{self.chain} does not track {asset.symbol}")

    async def compute_balance(self, address: str, asset: Asset) -> Snapshot:
        """Confirmed plus mempool balance from the first provider that answers."""
        self._check_asset(asset)
        self._require_providers()

        last_error: Exception | None = None
        for base in self._base_urls:
            try:
                payload = await self._http.get_json(f"{base}/address/{address}")
                summary = EsploraAddress.from_dict(payload)
            except HttpClientError as e:
                last_error = e
                logger.warning("Esplora balance failed (provider=%s): %s", base, e)
                continue
            return Snapshot(
                chain=self.chain,
                symbol=BTC.symbol,
                amount=scale_units(summary.balance_sats, 8),
                decimals=8,
            )
        raise ProviderError(f"all esplora providers failed for {address}: {last_error}") from last_error

    async def compute_flows(
        self,
        address: str,
        asset: Asset,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        """Page history newest-first and merge in-window flows page by page.

        Paging ends at the first confirmed transaction older than
        ``window.start``; transactions at or after ``window.end`` are skipped.
        Unconfirmed transactions have no block time and are skipped.
        Pages are assumed newest-first; an upstream that returned pages out of
        order would end paging early and miss older in-window transactions.
        """
        self._check_asset(asset)
        self._require_providers()

        cursor = PaginationCursor(
            provider_count=len(self._base_urls),
            backoff=BackoffState(self._backoff),
        )
        while True:
            if cursor.pages >= self._limits.max_pages:
                raise PaginationLimitError(
                    f"esplora pagination exceeded max_pages={self._limits.max_pages}"
                )

            try:
                txs = await self._fetch_page(address, cursor)
            except _PageFetchError as e:
                cursor.record_failure(self._limits, e)
                delay = cursor.backoff.next_delay(self._rng)
                logger.warning(
                    "Esplora page failed for %s (attempt %d), retrying in %.2fs: %s",
                    address,
                    cursor.consecutive_errors,
                    delay,
                    e,
                )
                await self._sleep(delay)
                continue

            if not txs:
                return
            cursor.pages += 1

            if self._merge_page(address, txs, window, accumulator, cursor):
                return

            cursor.advance(txs[-1].txid, self._limits)
            await self._sleep(self._page_delay)

    async def _fetch_page(self, address: str, cursor: PaginationCursor) -> list[EsploraTx]:
        """Fetch the next page, rotating through providers until one answers."""
        errors: list[HttpClientError] = []
        for index in cursor.provider_order():
            base = self._base_urls[index]
            if cursor.last_seen is None:
                url = f"{base}/address/{address}/txs"
            else:
                url = f"{base}/address/{address}/txs/chain/{cursor.last_seen}"
            try:
                payload = await self._http.get_json(url)
                if not isinstance(payload, list):
                    raise DecodeError(f"GET {url}: expected a list of transactions")
                txs = [EsploraTx.from_dict(tx) for tx in payload]
            except HttpClientError as e:
                logger.debug("Esplora provider %s failed: %s", base, e)
                errors.append(e)
                continue
            if index != cursor.rotation:
                logger.info("Esplora failover to %s", base)
            cursor.record_success(index)
            return txs

        if all(isinstance(e, HTTPStatusError) and not e.retryable for e in errors):
            # 4xx (other than 429) from every provider
            raise ProviderError(f"esplora rejected history request: {errors[-1]}") from errors[-1]
        raise _PageFetchError(str(errors[-1])) from errors[-1]

    def _merge_page(
        self,
        address: str,
        txs: list[EsploraTx],
        window: Window,
        accumulator: FlowAccumulator,
        cursor: PaginationCursor,
    ) -> bool:
        """Merge one page; return True once a transaction older than the window was seen."""
        for tx in txs:
            if tx.block_time is None:
                continue
            ts = from_epoch_seconds(tx.block_time)
            if ts >= window.end:
                continue
            if window.is_before(ts):
                return True
            if tx.txid in cursor.counted:
                continue
            cursor.counted.add(tx.txid)

            received = _sum_to(address, tx.outputs)
            sent = _sum_to(address, tx.prevouts)
            if received > 0:
                accumulator.add_inflow(BTC.symbol, ts, scale_units(received, 8))
            if sent > 0:
                accumulator.add_outflow(BTC.symbol, ts, scale_units(sent, 8))
        return False


class _PageFetchError(Exception):
    """Every provider failed for one page with at least one retryable error."""


def _sum_to(address: str, outputs: Sequence[EsploraOutput]) -> int:
    target = address.lower()
    return sum(out.value for out in outputs if out.address is not None and out.address.lower() == target)
