"""Capability interface shared by every chain integration."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from reserve_flow_tracker.flows.accumulator import FlowAccumulator
from reserve_flow_tracker.flows.windows import Window
from reserve_flow_tracker.models import Asset, ChainKind, Snapshot

logger = logging.getLogger(__name__)


class ChainAdapterError(Exception):
    """Base exception for chain adapter errors."""


class ConfigurationError(ChainAdapterError):
    """Raised when an adapter is asked for something its configuration cannot serve."""


class ProviderError(ChainAdapterError):
    """Raised when every configured provider failed."""


class UnsupportedAssetError(ChainAdapterError):
    """Raised when an asset is not tracked by the adapter."""


class PaginationError(ChainAdapterError):
    """Base exception for history pagination that cannot make progress."""


class PaginationStuckError(PaginationError):
    """Raised when the upstream keeps returning the same continuation cursor."""


class PaginationLoopError(PaginationError):
    """Raised when a continuation cursor that was already visited comes back."""


class PaginationLimitError(PaginationError):
    """Raised when the page-count ceiling is exceeded."""


class ConsecutiveErrorLimitError(PaginationError):
    """Raised when too many page fetches fail in a row."""


class ChainAdapter(ABC):
    """Balance and flow computation for one configured chain.

    Implementations are protocol-specific; the orchestrator only relies on
    this interface and on :attr:`kind` for logging.
    """

    kind: ChainKind

    def __init__(self, chain: str) -> None:
        self.chain = chain

    @property
    @abstractmethod
    def assets(self) -> tuple[Asset, ...]:
        """Assets whose balances this adapter can report."""

    @property
    def flow_assets(self) -> tuple[Asset, ...]:
        """Assets whose flows this adapter can compute (defaults to :attr:`assets`)."""
        return self.assets

    @abstractmethod
    async def compute_balance(self, address: str, asset: Asset) -> Snapshot:
        """Current balance of ``asset`` held by ``address``."""

    async def compute_balances(
        self,
        address: str,
        assets: Sequence[Asset],
        *,
        on_error: Callable[[Asset, Exception], None] | None = None,
    ) -> list[Snapshot]:
        """Balances of several assets; a failed asset is reported to ``on_error`` and left out."""
        snapshots: list[Snapshot] = []
        for asset in assets:
            try:
                snapshots.append(await self.compute_balance(address, asset))
            except Exception as e:
                logger.error(
                    "Balance failed chain=%s address=%s asset=%s: %s",
                    self.chain,
                    address,
                    asset.symbol,
                    e,
                )
                if on_error is not None:
                    on_error(asset, e)
        return snapshots

    @abstractmethod
    async def compute_flows(
        self,
        address: str,
        asset: Asset,
        window: Window,
        accumulator: FlowAccumulator,
    ) -> None:
        """Merge inflow/outflow of ``asset`` for ``address`` within ``window`` into ``accumulator``."""

    async def aclose(self) -> None:
        """Release adapter-owned resources (shared clients are closed by their owner)."""
        return None
