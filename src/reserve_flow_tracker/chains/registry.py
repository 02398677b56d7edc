"""Chain adapters resolved by chain identifier."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

from redis.asyncio import Redis

from reserve_flow_tracker.chains.base import ChainAdapter
from reserve_flow_tracker.chains.bitcoin import BitcoinAdapter, PaginationLimits
from reserve_flow_tracker.chains.evm import EvmAdapter
from reserve_flow_tracker.chains.evm_rpc import EvmRpcClient
from reserve_flow_tracker.chains.solana import SolanaAdapter
from reserve_flow_tracker.chains.tron import TronAdapter
from reserve_flow_tracker.config import Settings, TokenSpec
from reserve_flow_tracker.models import Asset
from reserve_flow_tracker.net.http import HttpClient
from reserve_flow_tracker.net.retry import BackoffPolicy

logger = logging.getLogger(__name__)


class ChainRegistry:
    """Mapping of chain name (``bitcoin``, ``ethereum``, ``solana``, ...) to adapter."""

    def __init__(self, adapters: Iterable[ChainAdapter] = ()) -> None:
        self._adapters: dict[str, ChainAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ChainAdapter) -> None:
        key = adapter.chain.strip().lower()
        if key in self._adapters:
            raise ValueError(f"chain {key!r} is already registered")
        self._adapters[key] = adapter

    def get(self, chain: str) -> ChainAdapter | None:
        return self._adapters.get(chain.strip().lower())

    def __contains__(self, chain: object) -> bool:
        return isinstance(chain, str) and chain.strip().lower() in self._adapters

    def __iter__(self) -> Iterator[ChainAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    @property
    def names(self) -> list[str]:
        return sorted(self._adapters)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning("Failed to close %s adapter: %s", adapter.chain, e)


def _token_assets(tokens: Iterable[TokenSpec]) -> list[Asset]:
    return [Asset(symbol=t.symbol, contract=t.address) for t in tokens]


def build_registry(
    settings: Settings,
    *,
    http: HttpClient,
    redis: Redis | None = None,
) -> ChainRegistry:
    """Construct one adapter per configured chain, all sharing ``http``.

    A chain whose endpoint is unset is left out of the registry.
    """
    registry = ChainRegistry()

    btc = settings.bitcoin
    if btc.enabled:
        registry.register(
            BitcoinAdapter(
                http,
                btc.esplora_urls,
                backoff=BackoffPolicy(
                    initial_delay=btc.initial_backoff_seconds,
                    max_delay=btc.max_backoff_seconds,
                ),
                limits=PaginationLimits(
                    max_consecutive_errors=btc.max_consecutive_errors,
                    max_no_progress=btc.max_no_progress,
                    max_pages=btc.max_pages,
                ),
                page_delay_seconds=btc.page_delay_seconds,
            )
        )

    evm = settings.evm
    for chain in evm.chains:
        rpc = EvmRpcClient(
            chain.rpc_url,
            chain=chain.name,
            redis=redis,
            block_cache_ttl_seconds=evm.block_cache_ttl_seconds,
            max_requests_per_second=evm.max_requests_per_second,
            request_timeout=settings.http.timeout_seconds,
        )
        api_key = chain.explorer_api_key.get_secret_value() if chain.explorer_api_key else None
        registry.register(
            EvmAdapter(
                rpc,
                chain=chain.name,
                native_symbol=chain.native_symbol,
                native_decimals=chain.native_decimals,
                tokens=_token_assets(chain.erc20),
                http=http,
                explorer_url=chain.explorer_url,
                explorer_api_key=api_key,
                explorer_chain_id=chain.explorer_chain_id,
                explorer_page_size=evm.explorer_page_size,
                logs_chunk_size_blocks=evm.logs_chunk_size_blocks,
                default_token_decimals=evm.default_token_decimals,
            )
        )
        if api_key is None:
            logger.info("No explorer API key for %s; native flows disabled", chain.name)

    sol = settings.solana
    if sol.rpc_url:
        registry.register(
            SolanaAdapter(
                http,
                sol.rpc_url,
                tokens=_token_assets(sol.spl_tokens),
                signatures_page_limit=sol.signatures_page_limit,
                default_token_decimals=sol.default_token_decimals,
            )
        )

    tron = settings.tron
    if tron.api_url:
        registry.register(
            TronAdapter(
                http,
                tron.api_url,
                tokens=_token_assets(tron.trc20_tokens),
                api_key=tron.api_key.get_secret_value() if tron.api_key else None,
                page_size=tron.page_size,
                max_pages=tron.max_pages,
                default_token_decimals=tron.default_token_decimals,
            )
        )

    logger.info("Chain registry: %s", ", ".join(registry.names) or "(empty)")
    return registry
