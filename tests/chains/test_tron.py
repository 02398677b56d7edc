"""Tests for the Tronscan-backed TRC20 adapter."""

from decimal import Decimal
from itertools import count
from typing import Any
from unittest.mock import MagicMock

import pytest

from reserve_flow_tracker.chains.base import PaginationLimitError, UnsupportedAssetError
from reserve_flow_tracker.chains.tron import API_KEY_HEADER, TronAdapter
from reserve_flow_tracker.flows.accumulator import FlowAccumulator, FlowBucket
from reserve_flow_tracker.flows.windows import Window
from reserve_flow_tracker.models import Asset
from reserve_flow_tracker.net.http import TransportError

API_URL = "https://apilist.tronscanapi.com/"
OWNER = "TReserve1111111111111111111111111"
PEER = "TPeer111111111111111111111111111111"
USDT = Asset("USDT", contract="TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t")
USDC = Asset("USDC", contract="TEkxiTehnzSmSe2XqrBj4w32RUN966rdz8")

JAN_30_MS = 1_706_572_800_000
FEB_2_MS = 1_706_832_000_000
FEB_3_MS = 1_706_918_400_000
FEB_8_MS = 1_707_350_400_000


def _transfer(txid: str, ts_ms: int, *, frm: str, to: str, quant: int, decimals: int = 6) -> dict[str, Any]:
    return {
        "transaction_id": txid,
        "block_ts": ts_ms,
        "from_address": frm,
        "to_address": to,
        "quant": str(quant),
        "tokenInfo": {"tokenAbbr": "USDT", "tokenDecimal": decimals},
    }


def _page(*transfers: dict[str, Any]) -> dict[str, Any]:
    return {"total": 1000, "token_transfers": list(transfers)}


def _adapter(http: MagicMock, **kwargs: Any) -> TronAdapter:
    return TronAdapter(http, API_URL, tokens=[USDT, USDC], **kwargs)


class TestBalances:
    @pytest.mark.asyncio
    async def test_listing_with_missing_token(self, mock_http: MagicMock) -> None:
        mock_http.get_json.return_value = {
            "total": 2,
            "data": [
                {"tokenId": USDT.contract, "tokenAbbr": "usdt", "balance": "2500000", "tokenDecimal": 6},
                {"tokenId": "_", "tokenAbbr": "trx", "balance": "100000000", "tokenDecimal": 6},
            ],
        }
        adapter = _adapter(mock_http, api_key="secret")
        snapshots = await adapter.compute_balances(OWNER, [USDT, USDC])

        assert [(s.symbol, s.amount) for s in snapshots] == [("USDT", Decimal("2.5")), ("USDC", Decimal(0))]
        mock_http.get_json.assert_awaited_once()
        call = mock_http.get_json.await_args
        assert call.args[0] == "https://apilist.tronscanapi.com/api/account/tokens"
        assert call.kwargs["params"]["address"] == OWNER
        assert call.kwargs["headers"] == {API_KEY_HEADER: "secret"}

    @pytest.mark.asyncio
    async def test_single_balance(self, mock_http: MagicMock) -> None:
        mock_http.get_json.return_value = {
            "data": [{"tokenId": USDC.contract, "tokenAbbr": "usdc", "balance": "7", "tokenDecimal": 6}]
        }
        snapshot = await _adapter(mock_http).compute_balance(OWNER, USDC)
        assert snapshot.amount == Decimal("0.000007")
        assert mock_http.get_json.await_args.kwargs["headers"] is None

    @pytest.mark.asyncio
    async def test_listing_failure_raises(self, mock_http: MagicMock) -> None:
        mock_http.get_json.side_effect = TransportError("timed out")
        with pytest.raises(TransportError):
            await _adapter(mock_http).compute_balances(OWNER, [USDT, USDC])

    @pytest.mark.asyncio
    async def test_untracked_token(self, mock_http: MagicMock) -> None:
        with pytest.raises(UnsupportedAssetError):
            await _adapter(mock_http).compute_balance(OWNER, Asset("BTT", contract="TAFj"))
        mock_http.get_json.assert_not_awaited()


class TestFlows:
    @pytest.mark.asyncio
    async def test_asset_without_contract(self, mock_http: MagicMock, window: Window) -> None:
        with pytest.raises(UnsupportedAssetError):
            await _adapter(mock_http).compute_flows(OWNER, Asset("TRX"), window, FlowAccumulator(weekly={}))
        mock_http.get_json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pages_until_empty_page(self, mock_http: MagicMock, window: Window) -> None:
        inbound = _transfer("a", FEB_3_MS, frm=PEER, to=OWNER, quant=1_500_000)
        outbound = _transfer("b", FEB_2_MS, frm=OWNER, to=PEER, quant=500_000)
        mock_http.get_json.side_effect = [
            _page(_transfer("late", FEB_8_MS, frm=PEER, to=OWNER, quant=9), inbound),
            _page(outbound, _transfer("c", FEB_2_MS - 1, frm=PEER, to=OWNER, quant=1)),
            _page(),
        ]
        weekly: FlowBucket = {}
        adapter = _adapter(mock_http, page_size=2)
        await adapter.compute_flows(OWNER, USDT, window, FlowAccumulator(weekly=weekly))

        cell = weekly["USDT"]["2024-W05"]
        assert cell.inflow == Decimal("1.500001")
        assert cell.outflow == Decimal("0.5")
        assert mock_http.get_json.await_count == 3

    @pytest.mark.asyncio
    async def test_stops_on_older_transfer(self, mock_http: MagicMock, window: Window) -> None:
        mock_http.get_json.side_effect = [
            _page(
                _transfer("a", FEB_2_MS, frm=PEER, to=OWNER, quant=2_000_000),
                _transfer("old", JAN_30_MS, frm=PEER, to=OWNER, quant=5_000_000),
            ),
        ]
        weekly: FlowBucket = {}
        await _adapter(mock_http, page_size=2).compute_flows(
            OWNER, USDT, window, FlowAccumulator(weekly=weekly)
        )
        assert weekly["USDT"]["2024-W05"].inflow == Decimal("2")
        params = mock_http.get_json.await_args.kwargs["params"]
        assert params["sort"] == "-timestamp"
        assert params["relatedAddress"] == OWNER
        assert params["contract_address"] == USDT.contract

    @pytest.mark.asyncio
    async def test_older_transfer_mid_page_scans_rest_of_page(self, mock_http: MagicMock, window: Window) -> None:
        mock_http.get_json.side_effect = [
            _page(
                _transfer("a", FEB_3_MS, frm=PEER, to=OWNER, quant=1_000_000),
                _transfer("old", JAN_30_MS, frm=PEER, to=OWNER, quant=5_000_000),
                _transfer("b", FEB_2_MS, frm=OWNER, to=PEER, quant=250_000),
            ),
            _page(_transfer("next", FEB_2_MS, frm=PEER, to=OWNER, quant=9_000_000)),
        ]
        weekly: FlowBucket = {}
        await _adapter(mock_http, page_size=3).compute_flows(
            OWNER, USDT, window, FlowAccumulator(weekly=weekly)
        )
        cell = weekly["USDT"]["2024-W05"]
        assert cell.inflow == Decimal("1")
        assert cell.outflow == Decimal("0.25")
        assert mock_http.get_json.await_count == 1

    @pytest.mark.asyncio
    async def test_repeated_rows_counted_once(self, mock_http: MagicMock, window: Window) -> None:
        first = _transfer("a", FEB_3_MS, frm=PEER, to=OWNER, quant=1_000_000)
        second = _transfer("b", FEB_2_MS, frm=PEER, to=OWNER, quant=1_000_000)
        mock_http.get_json.side_effect = [_page(first, second), _page(second)]
        weekly: FlowBucket = {}
        await _adapter(mock_http, page_size=2).compute_flows(
            OWNER, USDT, window, FlowAccumulator(weekly=weekly)
        )
        assert weekly["USDT"]["2024-W05"].inflow == Decimal("2")
        starts = [c.kwargs["params"]["start"] for c in mock_http.get_json.await_args_list]
        assert starts == [0, 2]

    @pytest.mark.asyncio
    async def test_page_error_leaves_no_partial_data(self, mock_http: MagicMock, window: Window) -> None:
        mock_http.get_json.side_effect = [
            _page(
                _transfer("a", FEB_3_MS, frm=PEER, to=OWNER, quant=1_000_000),
                _transfer("b", FEB_2_MS, frm=PEER, to=OWNER, quant=1_000_000),
            ),
            TransportError("GET timed out"),
        ]
        weekly: FlowBucket = {}
        with pytest.raises(TransportError):
            await _adapter(mock_http, page_size=2).compute_flows(
                OWNER, USDT, window, FlowAccumulator(weekly=weekly)
            )
        assert weekly == {}

    @pytest.mark.asyncio
    async def test_max_pages(self, mock_http: MagicMock, window: Window) -> None:
        ids = count()

        async def get_json(url: str, **_: Any) -> Any:
            return _page(_transfer(f"t{next(ids)}", FEB_2_MS, frm=PEER, to=OWNER, quant=1))

        mock_http.get_json.side_effect = get_json
        with pytest.raises(PaginationLimitError):
            await _adapter(mock_http, page_size=1, max_pages=3).compute_flows(
                OWNER, USDT, window, FlowAccumulator(weekly={})
            )
        assert mock_http.get_json.await_count == 3

    @pytest.mark.asyncio
    async def test_self_transfer_counts_both_ways(self, mock_http: MagicMock, window: Window) -> None:
        mock_http.get_json.return_value = _page(
            _transfer("self", FEB_2_MS, frm=OWNER, to=OWNER, quant=3_000_000)
        )
        weekly: FlowBucket = {}
        await _adapter(mock_http, page_size=50).compute_flows(
            OWNER, USDT, window, FlowAccumulator(weekly=weekly)
        )
        cell = weekly["USDT"]["2024-W05"]
        assert cell.inflow == cell.outflow == Decimal("3")
        assert cell.net == 0
