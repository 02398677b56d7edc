"""EVM balances and flows.

Token flows come from ERC20 ``Transfer`` logs over the block range that
covers the window; native-coin flows come from an Etherscan-compatible
explorer ``txlist`` API, since plain value transfers leave no logs.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from reserve_flow_tracker.chains.base import (
    ChainAdapter,
    ChainAdapterError,
    ConfigurationError,
    UnsupportedAssetError,
)
from reserve_flow_tracker.chains.evm_rpc import EvmRpcClient, RPCError
from reserve_flow_tracker.chains.models import ExplorerError, ExplorerTx, decode_explorer_response
from reserve_flow_tracker.flows.accumulator import FlowAccumulator
from reserve_flow_tracker.flows.units import hex_to_int, scale_units
from reserve_flow_tracker.flows.windows import Window, from_epoch_seconds
from reserve_flow_tracker.models import Asset, ChainKind, Snapshot
from reserve_flow_tracker.net.http import HttpClient

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

DEFAULT_LOGS_CHUNK_SIZE_BLOCKS = 50_000
DEFAULT_TOKEN_DECIMALS = 6
DEFAULT_EXPLORER_PAGE_SIZE = 1000


class ExplorerAPIError(ChainAdapterError):
    """Raised when the explorer API answers with an error object."""


def pad_topic_address(address: str) -> str:
    """Left-pad a 20-byte address to a 32-byte log topic."""
    return "0x" + address.lower().replace("0x", "").zfill(64)


class EvmAdapter(ChainAdapter):
    """Account-based chain adapter for the native coin and configured ERC20 tokens.

    Example:
        ```python
        rpc = EvmRpcClient("https://ethereum-rpc.publicnode.com")
        adapter = EvmAdapter(rpc, chain="ethereum", tokens=[Asset("USDT", "0xdAC1...")])
        await adapter.compute_flows(owner, adapter.assets[1], window, accumulator)
        ```
    """

    kind = ChainKind.EVM

    def __init__(
        self,
        rpc: EvmRpcClient,
        *,
        chain: str = "ethereum",
        native_symbol: str = "ETH",
        native_decimals: int = 18,
        tokens: Sequence[Asset] = (),
        http: HttpClient | None = None,
        explorer_url: str | None = None,
        explorer_api_key: str | None = None,
        explorer_chain_id: int | None = None,
        explorer_page_size: int = DEFAULT_EXPLORER_PAGE_SIZE,
        logs_chunk_size_blocks: int = DEFAULT_LOGS_CHUNK_SIZE_BLOCKS,
        default_token_decimals: int = DEFAULT_TOKEN_DECIMALS,
    ) -> None:
        super().__init__(chain)
        if logs_chunk_size_blocks < 1:
            raise ValueError("logs_chunk_size_blocks must be >= 1")
        self._rpc = rpc
        self._native = Asset(symbol=native_symbol, decimals=native_decimals)
        self._native_decimals = native_decimals
        self._tokens = tuple(tokens)
        self._http = http
        self._explorer_url = explorer_url
        self._explorer_api_key = explorer_api_key
        self._explorer_chain_id = explorer_chain_id
        self._explorer_page_size = explorer_page_size
        self._chunk = logs_chunk_size_blocks
        self._default_decimals = default_token_decimals

    @property
    def native(self) -> Asset:
        return self._native

    @property
    def assets(self) -> tuple[Asset, ...]:
        return (self._native, *self._tokens)

    @property
    def has_explorer(self) -> bool:
        return bool(self._explorer_api_key and self._explorer_url and self._http is not None)

    @property
    def flow_assets(self) -> tuple[Asset, ...]:
        if self.has_explorer:
            return self.assets
        return self._tokens

    def _check_asset(self, asset: Asset) -> None:
        if asset.is_native:
            if asset.symbol != self._native.symbol:
                raise UnsupportedAssetError(f"{self.chain} native coin is {self._native.symbol}")
            return
        contract = (asset.contract or "").lower()
        if not any((t.contract or "").lower() == contract for t in self._tokens):
            raise UnsupportedAssetError(f"{self.chain} does not track {asset.symbol} ({asset.contract})")

    def _token_contract(self, asset: Asset) -> str:
        if asset.contract is None:
            raise UnsupportedAssetError(f"{asset.symbol} is not an ERC20 token on {self.chain}")
        return asset.contract

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def compute_balance(self, address: str, asset: Asset) -> Snapshot:
        self._check_asset(asset)
        if asset.is_native:
            wei = await self._rpc.get_balance(address)
            return Snapshot(
                chain=self.chain,
                symbol=asset.symbol,
                amount=scale_units(wei, self._native_decimals),
                decimals=self._native_decimals,
            )
        return await self.compute_erc20_balance(address, asset)

    async def compute_erc20_balance(self, address: str, asset: Asset) -> Snapshot:
        """``balanceOf`` scaled by ``decimals()``, both read on every call."""
        contract = self._token_contract(asset)
        decimals = await self._rpc.get_erc20_decimals(contract)
        raw = await self._rpc.get_erc20_balance(contract, address)
        return Snapshot(
            chain=self.chain,
            symbol=asset.symbol,
            amount=scale_units(raw, decimals),
            decimals=decimals,
        )

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def compute_flows(
        self,
        address: str,
        asset: Asset,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        self._check_asset(asset)
        if asset.is_native:
            await self.compute_native_flows(address, window, accumulator)
        else:
            await self.compute_erc20_flows(address, asset, window, accumulator)

    async def _token_decimals(self, asset: Asset) -> int:
        try:
            return await self._rpc.get_erc20_decimals(self._token_contract(asset))
        except RPCError as e:
            logger.warning(
                "decimals() unavailable for %s on %s, using %d: %s",
                asset.symbol,
                self.chain,
                self._default_decimals,
                e,
            )
            return self._default_decimals

    async def _transfer_logs(
        self,
        contract: str,
        from_block: int,
        to_block: int,
        topics: list[str | None],
    ) -> list[dict[str, Any]]:
        logs: list[dict[str, Any]] = []
        for chunk_start in range(from_block, to_block + 1, self._chunk):
            chunk_end = min(chunk_start + self._chunk - 1, to_block)
            logs.extend(
                await self._rpc.get_logs(
                    {
                        "address": contract,
                        "fromBlock": chunk_start,
                        "toBlock": chunk_end,
                        "topics": [TRANSFER_TOPIC, *topics],
                    }
                )
            )
        return logs

    async def compute_erc20_flows(
        self,
        address: str,
        asset: Asset,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        """Merge ``Transfer`` logs to and from ``address`` within ``window``.

        The block range is resolved from the window by binary search, which
        is coarse; each log's block timestamp is re-checked against the exact
        window bounds before merging.
        """
        contract = self._token_contract(asset)
        from_block = await self._rpc.locate_block_by_time(window.start)
        to_block = await self._rpc.locate_block_by_time(window.end)
        decimals = await self._token_decimals(asset)

        owner_topic = pad_topic_address(address)
        inbound = await self._transfer_logs(contract, from_block, to_block, [None, owner_topic])
        outbound = await self._transfer_logs(contract, from_block, to_block, [owner_topic, None])
        logger.debug(
            "%s %s logs for %s in blocks %d-%d: %d in, %d out",
            self.chain,
            asset.symbol,
            address,
            from_block,
            to_block,
            len(inbound),
            len(outbound),
        )

        block_times: dict[int, int] = {}
        for is_inflow, logs in ((True, inbound), (False, outbound)):
            for log in logs:
                block_number = int(log["blockNumber"])
                if block_number not in block_times:
                    block_times[block_number] = await self._rpc.get_block_timestamp(block_number)
                ts = from_epoch_seconds(block_times[block_number])
                if not window.contains(ts):
                    continue
                raw = hex_to_int(log["data"])
                if raw == 0:
                    continue
                accumulator.add(asset.symbol, ts, is_inflow, scale_units(raw, decimals))

    async def compute_native_flows(
        self,
        address: str,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        """Merge native-coin flows from the explorer's normal-transaction list.

        Received value counts as inflow. Sent value plus the gas fee counts
        as outflow; a failed transaction still pays its fee but moves no value.
        """
        if not self.has_explorer:
            raise ConfigurationError(f"{self.chain}: native flows need an explorer API key")

        from_block = await self._rpc.locate_block_by_time(window.start)
        to_block = await self._rpc.locate_block_by_time(window.end)

        seen: set[str] = set()
        start_block = from_block
        while True:
            txs = await self._fetch_txlist(address, start_block, to_block)
            fresh = [tx for tx in txs if tx.hash not in seen]
            for tx in fresh:
                seen.add(tx.hash)
                self._merge_native(address, tx, window, accumulator)
            if len(txs) < self._explorer_page_size:
                return
            if not fresh:
                logger.warning(
                    "%s txlist for %s did not advance past block %d",
                    self.chain,
                    address,
                    start_block,
                )
                return
            start_block = txs[-1].block_number

    async def _fetch_txlist(self, address: str, start_block: int, end_block: int) -> list[ExplorerTx]:
        if self._http is None or self._explorer_url is None:
            raise ConfigurationError(f"{self.chain}: no explorer configured")
        params: dict[str, Any] = {
            "module": "account",
            "action": "txlist",
            "address": address,
            "startblock": start_block,
            "endblock": end_block,
            "page": 1,
            "offset": self._explorer_page_size,
            "sort": "asc",
            "apikey": self._explorer_api_key,
        }
        if self._explorer_chain_id is not None:
            params["chainid"] = self._explorer_chain_id
        payload = await self._http.get_json(self._explorer_url, params=params)
        response = decode_explorer_response(payload)
        if isinstance(response, ExplorerError):
            raise ExplorerAPIError(f"{self.chain} explorer error {response.message}: {response.detail}")
        return list(response.txs)

    def _merge_native(
        self,
        address: str,
        tx: ExplorerTx,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        if tx.timestamp is None:
            logger.debug("%s tx %s has no timestamp, skipping", self.chain, tx.hash)
            return
        ts = from_epoch_seconds(tx.timestamp)
        if not window.contains(ts):
            return
        me = address.lower()
        decimals = self._native_decimals
        symbol = self._native.symbol
        value = 0 if tx.is_error else tx.value
        if tx.to_address == me and value > 0:
            accumulator.add_inflow(symbol, ts, scale_units(value, decimals))
        if tx.from_address == me:
            sent = value + tx.fee
            if sent > 0:
                accumulator.add_outflow(symbol, ts, scale_units(sent, decimals))

    async def aclose(self) -> None:
        await self._rpc.aclose()
