"""Tests for the Solana JSON-RPC adapter."""

from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest

from reserve_flow_tracker.chains.base import UnsupportedAssetError
from reserve_flow_tracker.chains.solana import SOL, SolanaAdapter
from reserve_flow_tracker.flows.accumulator import FlowAccumulator, FlowBucket
from reserve_flow_tracker.flows.windows import Window
from reserve_flow_tracker.models import Asset
from reserve_flow_tracker.net.http import TransportError

RPC_URL = "https://api.mainnet-beta.solana.com"
OWNER = "Reserve1111111111111111111111111111111111111"
PEER = "Peer111111111111111111111111111111111111111"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC = Asset("USDC", contract=USDC_MINT)

JAN_30 = 1_706_572_800
FEB_2 = 1_706_832_000
FEB_3 = 1_706_918_400
FEB_8 = 1_707_350_400


def _ok(result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def _sig(signature: str, block_time: int | None) -> dict[str, Any]:
    return {"signature": signature, "blockTime": block_time, "err": None}


def _token_balance(owner: str, amount: int, decimals: int = 6) -> dict[str, Any]:
    return {
        "accountIndex": 1,
        "mint": USDC_MINT,
        "owner": owner,
        "uiTokenAmount": {"amount": str(amount), "decimals": decimals},
    }


def _transaction(
    block_time: int,
    *,
    keys: list[Any],
    pre: list[int],
    post: list[int],
    pre_tokens: list[dict[str, Any]] | None = None,
    post_tokens: list[dict[str, Any]] | None = None,
    loaded: dict[str, list[str]] | None = None,
) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "err": None,
        "preBalances": pre,
        "postBalances": post,
        "preTokenBalances": pre_tokens or [],
        "postTokenBalances": post_tokens or [],
    }
    if loaded is not None:
        meta["loadedAddresses"] = loaded
    return {
        "blockTime": block_time,
        "slot": 1,
        "meta": meta,
        "transaction": {"message": {"accountKeys": keys}},
    }


class _FakeRpc:
    """Routes JSON-RPC posts to canned results by method."""

    def __init__(self, signatures: list[list[dict[str, Any]]], transactions: dict[str, Any]) -> None:
        self.signature_pages = list(signatures)
        self.transactions = transactions
        self.signature_requests: list[dict[str, Any]] = []
        self.transaction_requests: list[str] = []

    async def handle(self, url: str, payload: dict[str, Any], **_: Any) -> Any:
        method = payload["method"]
        params = payload["params"]
        if method == "getSignaturesForAddress":
            self.signature_requests.append(params[1])
            return _ok(self.signature_pages.pop(0) if self.signature_pages else [])
        if method == "getTransaction":
            self.transaction_requests.append(params[0])
            value = self.transactions.get(params[0])
            if isinstance(value, Exception):
                raise value
            return value if isinstance(value, dict) and "error" in value else _ok(value)
        raise AssertionError(f"unexpected method {method}")


def _adapter(http: MagicMock, **kwargs: Any) -> SolanaAdapter:
    return SolanaAdapter(http, RPC_URL, tokens=[USDC], **kwargs)


class TestBalances:
    @pytest.mark.asyncio
    async def test_native_balance(self, mock_http: MagicMock) -> None:
        mock_http.post_json.return_value = _ok({"context": {"slot": 1}, "value": 2_500_000_000})
        snapshot = await _adapter(mock_http).compute_balance(OWNER, SOL)
        assert snapshot.amount == Decimal("2.5")
        payload = mock_http.post_json.await_args.args[1]
        assert payload["method"] == "getBalance"
        assert payload["params"] == [OWNER]

    @pytest.mark.asyncio
    async def test_token_balance_sums_accounts(self, mock_http: MagicMock) -> None:
        def account(amount: str) -> dict[str, Any]:
            return {
                "pubkey": "acc",
                "account": {
                    "data": {
                        "parsed": {"info": {"tokenAmount": {"amount": amount, "decimals": 6}}},
                        "program": "spl-token",
                    }
                },
            }

        mock_http.post_json.return_value = _ok({"value": [account("1000000"), account("500000")]})
        snapshot = await _adapter(mock_http).compute_balance(OWNER, USDC)
        assert snapshot.amount == Decimal("1.5")
        assert snapshot.decimals == 6
        params = mock_http.post_json.await_args.args[1]["params"]
        assert params == [OWNER, {"mint": USDC_MINT}, {"encoding": "jsonParsed"}]

    @pytest.mark.asyncio
    async def test_no_token_accounts_is_zero(self, mock_http: MagicMock) -> None:
        mock_http.post_json.return_value = _ok({"value": []})
        snapshot = await _adapter(mock_http, default_token_decimals=6).compute_balance(OWNER, USDC)
        assert snapshot.amount == 0

    @pytest.mark.asyncio
    async def test_untracked_mint(self, mock_http: MagicMock) -> None:
        with pytest.raises(UnsupportedAssetError):
            await _adapter(mock_http).compute_balance(OWNER, Asset("BONK", contract="DezX"))


class TestSignatures:
    @pytest.mark.asyncio
    async def test_pages_until_older_than_start(self, mock_http: MagicMock, window: Window) -> None:
        rpc = _FakeRpc(
            signatures=[
                [_sig("s4", FEB_3), _sig("s3", FEB_2)],
                [_sig("s2", None), _sig("s1", JAN_30), _sig("s0", FEB_2)],
                [_sig("never", JAN_30)],
            ],
            transactions={},
        )
        mock_http.post_json.side_effect = rpc.handle
        signatures = await _adapter(mock_http, signatures_page_limit=2).list_signatures_since(
            OWNER, window.start
        )
        assert [s.signature for s in signatures] == ["s4", "s3", "s0"]
        assert rpc.signature_requests == [{"limit": 2}, {"limit": 2, "before": "s3"}]

    @pytest.mark.asyncio
    async def test_short_page_ends_paging(self, mock_http: MagicMock, window: Window) -> None:
        rpc = _FakeRpc(signatures=[[_sig("s1", FEB_2)]], transactions={})
        mock_http.post_json.side_effect = rpc.handle
        signatures = await _adapter(mock_http, signatures_page_limit=10).list_signatures_since(
            OWNER, window.start
        )
        assert [s.signature for s in signatures] == ["s1"]
        assert len(rpc.signature_requests) == 1


class TestFlows:
    @pytest.mark.asyncio
    async def test_native_deltas(self, mock_http: MagicMock, window: Window) -> None:
        rpc = _FakeRpc(
            signatures=[[_sig("late", FEB_8), _sig("out", FEB_3), _sig("in", FEB_2), _sig("old", JAN_30)]],
            transactions={
                "in": _transaction(
                    FEB_2, keys=[PEER, OWNER], pre=[5_000_000_000, 0], post=[3_999_995_000, 1_000_000_000]
                ),
                "out": _transaction(
                    FEB_3,
                    keys=[{"pubkey": OWNER, "signer": True, "writable": True}, PEER],
                    pre=[1_000_000_000, 0],
                    post=[749_995_000, 250_000_000],
                ),
            },
        )
        mock_http.post_json.side_effect = rpc.handle
        weekly: FlowBucket = {}
        await _adapter(mock_http).compute_flows(OWNER, SOL, window, FlowAccumulator(weekly=weekly))

        cell = weekly["SOL"]["2024-W05"]
        assert cell.inflow == Decimal("1")
        assert cell.outflow == Decimal("0.250005")
        # transactions at or after the window end are never fetched
        assert rpc.transaction_requests == ["out", "in"]

    @pytest.mark.asyncio
    async def test_loaded_addresses_extend_account_keys(self, mock_http: MagicMock, window: Window) -> None:
        rpc = _FakeRpc(
            signatures=[[_sig("v0", FEB_2)]],
            transactions={
                "v0": _transaction(
                    FEB_2,
                    keys=[PEER],
                    pre=[10, 0, 0],
                    post=[5, 0, 2_000_000_000],
                    loaded={"writable": ["Other1111"], "readonly": [OWNER]},
                ),
            },
        )
        mock_http.post_json.side_effect = rpc.handle
        weekly: FlowBucket = {}
        await _adapter(mock_http).compute_flows(OWNER, SOL, window, FlowAccumulator(weekly=weekly))
        assert weekly["SOL"]["2024-W05"].inflow == Decimal("2")

    @pytest.mark.asyncio
    async def test_token_deltas(self, mock_http: MagicMock, window: Window) -> None:
        rpc = _FakeRpc(
            signatures=[[_sig("t2", FEB_3), _sig("t1", FEB_2)]],
            transactions={
                "t1": _transaction(
                    FEB_2,
                    keys=[PEER, OWNER],
                    pre=[0, 0],
                    post=[0, 0],
                    pre_tokens=[_token_balance(PEER, 9_000_000)],
                    post_tokens=[_token_balance(PEER, 7_500_000), _token_balance(OWNER, 1_500_000)],
                ),
                "t2": _transaction(
                    FEB_3,
                    keys=[OWNER, PEER],
                    pre=[0, 0],
                    post=[0, 0],
                    pre_tokens=[_token_balance(OWNER, 1_500_000)],
                    post_tokens=[_token_balance(OWNER, 1_000_000)],
                ),
            },
        )
        mock_http.post_json.side_effect = rpc.handle
        weekly: FlowBucket = {}
        await _adapter(mock_http).compute_flows(OWNER, USDC, window, FlowAccumulator(weekly=weekly))

        cell = weekly["USDC"]["2024-W05"]
        assert cell.inflow == Decimal("1.5")
        assert cell.outflow == Decimal("0.5")
        assert "SOL" not in weekly

    @pytest.mark.asyncio
    async def test_failed_fetch_is_skipped(self, mock_http: MagicMock, window: Window) -> None:
        rpc = _FakeRpc(
            signatures=[[_sig("bad", FEB_3), _sig("missing", FEB_3), _sig("rpcerr", FEB_3), _sig("ok", FEB_2)]],
            transactions={
                "bad": TransportError("POST timed out"),
                "missing": None,
                "rpcerr": {"jsonrpc": "2.0", "id": 1, "error": {"code": -32009, "message": "pruned"}},
                "ok": _transaction(FEB_2, keys=[OWNER], pre=[0], post=[1_000_000_000]),
            },
        )
        mock_http.post_json.side_effect = rpc.handle
        weekly: FlowBucket = {}
        await _adapter(mock_http).compute_flows(OWNER, SOL, window, FlowAccumulator(weekly=weekly))
        assert list(weekly["SOL"]) == ["2024-W05"]
        assert weekly["SOL"]["2024-W05"].inflow == Decimal("1")
        assert weekly["SOL"]["2024-W05"].outflow is None

    @pytest.mark.asyncio
    async def test_signature_listing_failure_propagates(self, mock_http: MagicMock, window: Window) -> None:
        mock_http.post_json.side_effect = TransportError("connection refused")
        with pytest.raises(TransportError):
            await _adapter(mock_http).compute_flows(OWNER, SOL, window, FlowAccumulator(weekly={}))
