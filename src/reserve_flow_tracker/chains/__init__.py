"""Chain adapters - Bitcoin, EVM, Solana and Tron balances and flows."""

from reserve_flow_tracker.chains.base import (
    ChainAdapter,
    ChainAdapterError,
    ConfigurationError,
    ConsecutiveErrorLimitError,
    PaginationError,
    PaginationLimitError,
    PaginationLoopError,
    PaginationStuckError,
    ProviderError,
    UnsupportedAssetError,
)
from reserve_flow_tracker.chains.bitcoin import BitcoinAdapter, PaginationCursor, PaginationLimits
from reserve_flow_tracker.chains.evm import EvmAdapter, ExplorerAPIError
from reserve_flow_tracker.chains.evm_rpc import EvmRpcClient, RPCError, locate_block
from reserve_flow_tracker.chains.registry import ChainRegistry, build_registry
from reserve_flow_tracker.chains.solana import SolanaAdapter
from reserve_flow_tracker.chains.tron import TronAdapter

__all__ = [
    "BitcoinAdapter",
    "ChainAdapter",
    "ChainAdapterError",
    "ChainRegistry",
    "ConfigurationError",
    "ConsecutiveErrorLimitError",
    "EvmAdapter",
    "EvmRpcClient",
    "ExplorerAPIError",
    "PaginationCursor",
    "PaginationError",
    "PaginationLimitError",
    "PaginationLimits",
    "PaginationLoopError",
    "PaginationStuckError",
    "ProviderError",
    "RPCError",
    "SolanaAdapter",
    "TronAdapter",
    "UnsupportedAssetError",
    "build_registry",
    "locate_block",
]
