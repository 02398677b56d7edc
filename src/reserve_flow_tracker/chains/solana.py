"""Solana balances and flows over JSON-RPC.

Flows are derived from per-transaction balance deltas: the owner's lamport
balance before/after each transaction for SOL, and the owner's token-balance
ledger entries for SPL mints.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from datetime import datetime
from typing import Any

from reserve_flow_tracker.chains.base import ChainAdapter, UnsupportedAssetError
from reserve_flow_tracker.chains.models import SignatureInfo, SolanaTransaction, TokenAccount
from reserve_flow_tracker.flows.accumulator import FlowAccumulator
from reserve_flow_tracker.flows.units import scale_units
from reserve_flow_tracker.flows.windows import Window, from_epoch_seconds
from reserve_flow_tracker.models import Asset, ChainKind, Snapshot
from reserve_flow_tracker.net import jsonrpc
from reserve_flow_tracker.net.http import DecodeError, HttpClient, HttpClientError
from reserve_flow_tracker.net.jsonrpc import RpcError

logger = logging.getLogger(__name__)

SOL = Asset(symbol="SOL", decimals=9)

DEFAULT_SIGNATURES_PAGE_LIMIT = 1000
DEFAULT_TOKEN_DECIMALS = 6

_TRANSACTION_CONFIG = {"encoding": "json", "maxSupportedTransactionVersion": 0}


class SolanaAdapter(ChainAdapter):
    """Adapter for SOL and configured SPL mints (``Asset.contract`` is the mint)."""

    kind = ChainKind.SOLANA

    def __init__(
        self,
        http: HttpClient,
        rpc_url: str,
        *,
        chain: str = "solana",
        tokens: Sequence[Asset] = (),
        signatures_page_limit: int = DEFAULT_SIGNATURES_PAGE_LIMIT,
        default_token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    ) -> None:
        super().__init__(chain)
        self._http = http
        self._rpc_url = rpc_url
        self._tokens = tuple(tokens)
        self._page_limit = signatures_page_limit
        self._default_decimals = default_token_decimals

    @property
    def assets(self) -> tuple[Asset, ...]:
        return (SOL, *self._tokens)

    async def _call(self, method: str, params: list[Any]) -> Any:
        return await jsonrpc.call(self._http, self._rpc_url, method, params)

    def _check_asset(self, asset: Asset) -> None:
        if asset.is_native:
            if asset.symbol != SOL.symbol:
                raise UnsupportedAssetError(f"{self.chain} native coin is SOL")
            return
        if not any(t.contract == asset.contract for t in self._tokens):
            raise UnsupportedAssetError(f"{self.chain} does not track {asset.symbol} ({asset.contract})")

    async def compute_balance(self, address: str, asset: Asset) -> Snapshot:
        self._check_asset(asset)
        if asset.is_native:
            result = await self._call("getBalance", [address])
            if not isinstance(result, dict) or "value" not in result:
                raise DecodeError("getBalance: missing value")
            return Snapshot(
                chain=self.chain,
                symbol=SOL.symbol,
                amount=scale_units(int(result["value"]), 9),
                decimals=9,
            )

        result = await self._call(
            "getTokenAccountsByOwner",
            [address, {"mint": asset.contract}, {"encoding": "jsonParsed"}],
        )
        if not isinstance(result, dict) or not isinstance(result.get("value"), list):
            raise DecodeError("getTokenAccountsByOwner: missing value list")
        accounts = [TokenAccount.from_dict(v) for v in result["value"]]
        decimals = next(
            (a.decimals for a in accounts if a.decimals is not None),
            self._default_decimals,
        )
        return Snapshot(
            chain=self.chain,
            symbol=asset.symbol,
            amount=scale_units(sum(a.amount for a in accounts), decimals),
            decimals=decimals,
        )

    async def list_signatures_since(self, owner: str, start: datetime) -> list[SignatureInfo]:
        """Signatures newest-first down to ``start``.

        Paging stops after the first page containing a transaction older than
        ``start``; the rest of that page is still scanned for entries at or
        after ``start``. Entries without a block time are dropped.
        """
        signatures: list[SignatureInfo] = []
        before: str | None = None
        while True:
            options: dict[str, Any] = {"limit": self._page_limit}
            if before is not None:
                options["before"] = before
            result = await self._call("getSignaturesForAddress", [owner, options])
            if not isinstance(result, list):
                raise DecodeError("getSignaturesForAddress: expected a list")
            page = [SignatureInfo.from_dict(item) for item in result]
            if not page:
                break

            reached_start = False
            for info in page:
                if info.block_time is None:
                    continue
                if from_epoch_seconds(info.block_time) < start:
                    reached_start = True
                    continue
                signatures.append(info)

            before = page[-1].signature
            if reached_start or len(page) < self._page_limit:
                break
        return signatures

    async def _transactions(
        self, owner: str, window: Window
    ) -> AsyncIterator[tuple[datetime, SolanaTransaction]]:
        for info in await self.list_signatures_since(owner, window.start):
            if info.block_time is None or from_epoch_seconds(info.block_time) >= window.end:
                continue
            try:
                result = await self._call("getTransaction", [info.signature, _TRANSACTION_CONFIG])
                if result is None:
                    logger.warning("Transaction %s not found, skipping", info.signature)
                    continue
                tx = SolanaTransaction.from_dict(result)
            except (HttpClientError, RpcError) as e:
                logger.warning("getTransaction %s failed, skipping: %s", info.signature, e)
                continue
            if tx.block_time is None:
                continue
            ts = from_epoch_seconds(tx.block_time)
            if window.contains(ts):
                yield ts, tx

    async def compute_flows(
        self,
        address: str,
        asset: Asset,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        self._check_asset(asset)
        if asset.contract is None:
            await self.compute_native_flows(address, window, accumulator)
        else:
            await self.compute_token_flows(address, asset.contract, asset.symbol, window, accumulator)

    async def compute_native_flows(
        self,
        owner: str,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        async for ts, tx in self._transactions(owner, window):
            index = tx.account_index(owner)
            if index is None or index >= len(tx.pre_balances) or index >= len(tx.post_balances):
                continue
            delta = tx.post_balances[index] - tx.pre_balances[index]
            if delta > 0:
                accumulator.add_inflow(SOL.symbol, ts, scale_units(delta, 9))
            elif delta < 0:
                accumulator.add_outflow(SOL.symbol, ts, scale_units(-delta, 9))

    async def compute_token_flows(
        self,
        owner: str,
        mint: str,
        symbol: str,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        """Merge SPL flows using the decimals recorded in the ledger entries."""
        async for ts, tx in self._transactions(owner, window):
            pre = [b for b in tx.pre_token_balances if b.matches(owner, mint)]
            post = [b for b in tx.post_token_balances if b.matches(owner, mint)]
            if not pre and not post:
                continue
            decimals = next(
                (b.decimals for b in (*post, *pre) if b.decimals is not None),
                self._default_decimals,
            )
            delta = sum(b.amount for b in post) - sum(b.amount for b in pre)
            if delta > 0:
                accumulator.add_inflow(symbol, ts, scale_units(delta, decimals))
            elif delta < 0:
                accumulator.add_outflow(symbol, ts, scale_units(-delta, decimals))
