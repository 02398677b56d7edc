"""JSON-RPC 2.0 envelopes decoded into a success/failure variant."""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Any

from reserve_flow_tracker.net.http import DecodeError, HttpClient

_request_ids = itertools.count(1)


class RpcError(Exception):
    """Raised when a JSON-RPC call returns an error object."""

    def __init__(self, method: str, code: int, message: str) -> None:
        super().__init__(f"{method} rpc error {code}: {message}")
        self.method = method
        self.code = code
        self.message = message


@dataclass(frozen=True)
class RpcSuccess:
    result: Any


@dataclass(frozen=True)
class RpcFailure:
    code: int
    message: str


RpcResponse = RpcSuccess | RpcFailure


def build_request(method: str, params: list[Any]) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": next(_request_ids), "method": method, "params": params}


def decode_response(payload: Any) -> RpcResponse:
    """Decode a JSON-RPC envelope; exactly one of ``result``/``error`` must be present."""
    if not isinstance(payload, dict):
        raise DecodeError(f"JSON-RPC envelope must be an object, got {type(payload).__name__}")
    error = payload.get("error")
    if error is not None:
        if not isinstance(error, dict):
            return RpcFailure(code=-1, message=str(error))
        return RpcFailure(code=int(error.get("code", -1)), message=str(error.get("message", "")))
    if "result" not in payload:
        raise DecodeError("JSON-RPC envelope has neither result nor error")
    return RpcSuccess(result=payload["result"])


async def call(http: HttpClient, url: str, method: str, params: list[Any]) -> Any:
    """POST one JSON-RPC request and return its ``result`` or raise :class:`RpcError`."""
    payload = await http.post_json(url, build_request(method, params))
    response = decode_response(payload)
    if isinstance(response, RpcFailure):
        raise RpcError(method, response.code, response.message)
    return response.result
