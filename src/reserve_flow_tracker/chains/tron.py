"""Tron TRC20 balances and flows from a Tronscan-compatible indexer API."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from reserve_flow_tracker.chains.base import (
    ChainAdapter,
    PaginationLimitError,
    UnsupportedAssetError,
)
from reserve_flow_tracker.chains.models import TronTokenBalance, TronTransfer
from reserve_flow_tracker.flows.accumulator import FlowAccumulator
from reserve_flow_tracker.flows.units import scale_units
from reserve_flow_tracker.flows.windows import Window, from_epoch_ms
from reserve_flow_tracker.models import Asset, ChainKind, Snapshot
from reserve_flow_tracker.net.http import DecodeError, HttpClient

logger = logging.getLogger(__name__)

API_KEY_HEADER = "TRON-PRO-API-KEY"

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 2_000
DEFAULT_TOKEN_DECIMALS = 6
BALANCE_LISTING_LIMIT = 200


class TronAdapter(ChainAdapter):
    """TRC20 adapter; ``Asset.contract`` is the token contract address.

    A page-fetch error aborts the whole flow call: transfers are collected
    for the full window first and merged only once paging has finished.
    Paging relies on the indexer sorting transfers newest-first.
    """

    kind = ChainKind.TRON

    def __init__(
        self,
        http: HttpClient,
        api_url: str,
        *,
        chain: str = "tron",
        tokens: Sequence[Asset] = (),
        api_key: str | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_pages: int = DEFAULT_MAX_PAGES,
        default_token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    ) -> None:
        super().__init__(chain)
        self._http = http
        self._api_url = api_url.rstrip("/")
        self._tokens = tuple(tokens)
        self._headers = {API_KEY_HEADER: api_key} if api_key else None
        self._page_size = page_size
        self._max_pages = max_pages
        self._default_decimals = default_token_decimals

    @property
    def assets(self) -> tuple[Asset, ...]:
        return self._tokens

    def _check_asset(self, asset: Asset) -> str:
        if asset.contract is None or not any(t.contract == asset.contract for t in self._tokens):
            raise UnsupportedAssetError(f"{self.chain} does not track {asset.symbol} ({asset.contract})")
        return asset.contract

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = await self._http.get_json(f"{self._api_url}{path}", params=params, headers=self._headers)
        if not isinstance(payload, dict):
            raise DecodeError(f"GET {path}: expected an object")
        return payload

    async def fetch_token_balances(self, address: str) -> list[TronTokenBalance]:
        """Every token balance the indexer lists for ``address`` (one call)."""
        payload = await self._get(
            "/api/account/tokens",
            {"address": address, "start": 0, "limit": BALANCE_LISTING_LIMIT},
        )
        data = payload.get("data")
        if not isinstance(data, list):
            raise DecodeError("/api/account/tokens: missing data list")
        return [TronTokenBalance.from_dict(item) for item in data]

    async def compute_balances(
        self,
        address: str,
        assets: Sequence[Asset],
        *,
        on_error: Callable[[Asset, Exception], None] | None = None,
    ) -> list[Snapshot]:
        """Balances of ``assets`` from a single listing call.

        Listed tokens outside the requested contracts are ignored; requested
        tokens the address does not hold are reported as zero. A failed
        listing call fails every asset, so it is raised rather than reported
        through ``on_error``.
        """
        contracts = [self._check_asset(asset) for asset in assets]
        listed = {b.token_id: b for b in await self.fetch_token_balances(address)}

        snapshots: list[Snapshot] = []
        for asset, contract in zip(assets, contracts):
            balance = listed.get(contract)
            if balance is None:
                snapshots.append(
                    Snapshot(
                        chain=self.chain,
                        symbol=asset.symbol,
                        amount=scale_units(0, self._default_decimals),
                        decimals=self._default_decimals,
                    )
                )
                continue
            decimals = balance.decimals if balance.decimals is not None else self._default_decimals
            snapshots.append(
                Snapshot(
                    chain=self.chain,
                    symbol=asset.symbol,
                    amount=scale_units(balance.amount, decimals),
                    decimals=decimals,
                )
            )
        return snapshots

    async def compute_balance(self, address: str, asset: Asset) -> Snapshot:
        return (await self.compute_balances(address, [asset]))[0]

    async def _collect_transfers(self, address: str, contract: str, window: Window) -> list[TronTransfer]:
        collected: list[TronTransfer] = []
        seen: set[tuple[str, str, str, int]] = set()
        start_ms, end_ms = window.start_ms, window.end_ms

        for page in range(self._max_pages):
            payload = await self._get(
                "/api/token_trc20/transfers",
                {
                    "limit": self._page_size,
                    "start": page * self._page_size,
                    "sort": "-timestamp",
                    "relatedAddress": address,
                    "contract_address": contract,
                },
            )
            items = payload.get("token_transfers")
            if not isinstance(items, list):
                raise DecodeError("/api/token_trc20/transfers: missing token_transfers list")
            transfers = [TronTransfer.from_dict(item) for item in items]
            if not transfers:
                return collected

            reached_start = False
            for transfer in transfers:
                if transfer.block_ts is None:
                    continue
                if transfer.block_ts < start_ms:
                    reached_start = True
                    continue
                if transfer.block_ts >= end_ms:
                    continue
                # offset paging repeats rows when new transfers arrive mid-scan
                key = (transfer.transaction_id, transfer.from_address, transfer.to_address, transfer.amount)
                if key in seen:
                    continue
                seen.add(key)
                collected.append(transfer)

            if reached_start or len(transfers) < self._page_size:
                return collected

        raise PaginationLimitError(f"tron transfer pagination exceeded max_pages={self._max_pages}")

    async def compute_flows(
        self,
        address: str,
        asset: Asset,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        contract = self._check_asset(asset)
        transfers = await self._collect_transfers(address, contract, window)
        logger.debug("%s %s transfers for %s in %s: %d", self.chain, asset.symbol, address, window, len(transfers))

        for transfer in transfers:
            if transfer.amount <= 0 or transfer.block_ts is None:
                continue
            decimals = transfer.decimals if transfer.decimals is not None else self._default_decimals
            amount = scale_units(transfer.amount, decimals)
            ts = from_epoch_ms(transfer.block_ts)
            if transfer.to_address == address:
                accumulator.add_inflow(asset.symbol, ts, amount)
            if transfer.from_address == address:
                accumulator.add_outflow(asset.symbol, ts, amount)
