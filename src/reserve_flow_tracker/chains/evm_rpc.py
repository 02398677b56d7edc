"""EVM JSON-RPC client with rate limiting and block-timestamp caching.

This module provides the node-facing half of the EVM integration:
- web3 ``AsyncWeb3`` over ``AsyncHTTPProvider`` with a per-request timeout
- Token bucket rate limiting to respect provider limits
- Optional Redis cache for block timestamps (immutable once mined)
- Binary search from a timestamp to the first block at or after it

Calls are not retried; the first failure surfaces as :class:`RPCError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception
from web3.middleware import ExtraDataToPOAMiddleware
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BLOCK_CACHE_TTL_SECONDS = 86_400
DEFAULT_MAX_REQUESTS_PER_SECOND = 25
DEFAULT_REQUEST_TIMEOUT = 30

ERC20_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

_RPC_EXCEPTIONS = (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError)


class EvmClientError(Exception):
    """Base exception for EVM client errors."""


class RPCError(EvmClientError):
    """Raised when an RPC call fails."""


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        """Create a rate limiter with specified max requests per second."""
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def acquire(self, tokens: float = 1.0) -> None:
        """Acquire tokens, waiting if necessary."""
        while True:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            wait_time = (tokens - self.tokens) / self.refill_rate
            await asyncio.sleep(wait_time)


async def locate_block(
    target: int,
    latest: int,
    timestamp_of: Callable[[int], Awaitable[int]],
) -> int:
    """Smallest block in ``[0, latest]`` whose timestamp is >= ``target``.

    Timestamps are assumed non-decreasing with height. If every block is
    older than ``target`` the search converges on ``latest``.
    """
    if latest < 0:
        raise ValueError("latest must be >= 0")
    lo, hi = 0, latest
    while lo < hi:
        mid = (lo + hi) // 2
        if await timestamp_of(mid) < target:
            lo = mid + 1
        else:
            hi = mid
    return lo


class EvmRpcClient:
    """Async EVM node client with caching and rate limiting.

    Example:
        ```python
        client = EvmRpcClient("https://ethereum-rpc.publicnode.com", chain="ethereum")
        wei = await client.get_balance("0x...")
        block = await client.locate_block_by_time(window.start)
        await client.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        chain: str = "ethereum",
        redis: Redis | None = None,
        block_cache_ttl_seconds: int = DEFAULT_BLOCK_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        """Initialize the EVM client.

        Args:
            rpc_url: JSON-RPC endpoint URL.
            chain: Chain name, used in cache keys and error messages.
            redis: Optional Redis client for caching block timestamps.
            block_cache_ttl_seconds: Cache TTL for block timestamps.
            max_requests_per_second: Rate limit for RPC calls.
            request_timeout: Per-request timeout in seconds.
        """
        self.chain = chain
        self._rpc_url = rpc_url
        self._redis = redis
        self._block_cache_ttl = block_cache_ttl_seconds
        self._w3 = self._new_web3_client(rpc_url, request_timeout)
        self._rate_limiter = RateLimiter.create(max_requests_per_second)
        self._cache_prefix = f"evm:{chain}:"

    def _new_web3_client(self, rpc_url: str, timeout: float) -> AsyncWeb3[AsyncHTTPProvider]:
        provider = AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout)},
        )
        client = AsyncWeb3(provider)
        try:
            client.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        except Exception as e:
            logger.warning("Failed to inject PoA middleware (rpc=%s): %s", rpc_url, e)
        return client

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=self._block_cache_ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    async def _execute(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        await self._rate_limiter.acquire()
        try:
            return await call()
        except _RPC_EXCEPTIONS as e:
            raise RPCError(f"{self.chain} {label} failed: {e}") from e

    async def get_latest_block_number(self) -> int:
        number = await self._execute("eth_blockNumber", lambda: self._w3.eth.block_number)
        return int(number)

    async def get_balance(self, address: str) -> int:
        """Latest native balance in base units (wei)."""
        checksum = AsyncWeb3.to_checksum_address(address)
        balance = await self._execute(
            "eth_getBalance",
            lambda: self._w3.eth.get_balance(checksum, "latest"),
        )
        return int(balance)

    async def get_block_timestamp(self, block_number: int) -> int:
        """Unix timestamp of a block, served from Redis when cached."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = f"{self._cache_prefix}block_ts:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return int(cached)

        block = await self._execute(
            "eth_getBlockByNumber",
            lambda: self._w3.eth.get_block(block_number),
        )
        timestamp = int(block["timestamp"])
        await self._set_cached(cache_key, str(timestamp))
        return timestamp

    async def locate_block_by_time(self, ts: datetime) -> int:
        """First block whose timestamp is >= ``ts`` (or the latest block)."""
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        latest = await self.get_latest_block_number()
        return await locate_block(int(ts.timestamp()), latest, self.get_block_timestamp)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        params = dict(filter_params)
        if isinstance(params.get("address"), str):
            params["address"] = AsyncWeb3.to_checksum_address(params["address"])
        logs = await self._execute("eth_getLogs", lambda: self._w3.eth.get_logs(params))
        return [dict(log) for log in logs]

    def _erc20(self, token_address: str) -> Any:
        return self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address),
            abi=ERC20_ABI,
        )

    async def get_erc20_decimals(self, token_address: str) -> int:
        """``decimals()`` of a token; always read from the chain."""
        contract = self._erc20(token_address)
        decimals = await self._execute(
            "decimals",
            lambda: contract.functions.decimals().call(block_identifier="latest"),
        )
        return int(decimals)

    async def get_erc20_balance(self, token_address: str, holder_address: str) -> int:
        """``balanceOf(holder)`` in the token's base units."""
        contract = self._erc20(token_address)
        holder = AsyncWeb3.to_checksum_address(holder_address)
        balance = await self._execute(
            "balanceOf",
            lambda: contract.functions.balanceOf(holder).call(block_identifier="latest"),
        )
        return int(balance)

    async def aclose(self) -> None:
        """Close the async HTTP provider session to avoid leaked aiohttp sessions."""
        disconnect = getattr(self._w3.provider, "disconnect", None)
        if not callable(disconnect):
            return
        try:
            result = disconnect()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning("Failed to close RPC provider session: %s", e)
