"""Network layer - pooled HTTP client, JSON-RPC envelopes and retry policy."""

from reserve_flow_tracker.net.http import (
    DecodeError,
    HttpClient,
    HttpClientError,
    HTTPStatusError,
    TransportError,
)
from reserve_flow_tracker.net.jsonrpc import RpcError, RpcFailure, RpcSuccess
from reserve_flow_tracker.net.retry import BackoffPolicy, BackoffState

__all__ = [
    "BackoffPolicy",
    "BackoffState",
    "DecodeError",
    "HTTPStatusError",
    "HttpClient",
    "HttpClientError",
    "RpcError",
    "RpcFailure",
    "RpcSuccess",
    "TransportError",
]
