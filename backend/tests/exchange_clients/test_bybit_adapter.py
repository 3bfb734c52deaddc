"""
Tests for backend/tradedesk/exchange_clients/bybit_adapter.py

Tests the ByBit adapter that wraps ByBitClient to implement the
ExchangeClient interface. All ByBitClient methods are mocked.
"""

from unittest.mock import AsyncMock

import pytest

from tradedesk.config import settings
from tradedesk.exchange_clients.bybit_adapter import ByBitAdapter, round_down_to_step
from tradedesk.exchange_clients.bybit_client import ByBitError


# =========================================================
# Fixtures
# =========================================================


def _make_mock_bybit_client(position_side="", position_size="0", order_status="Filled"):
    """Create a fully mocked ByBitClient."""
    client = AsyncMock()
    client.get_wallet_balance = AsyncMock(return_value={
        "result": {"list": [{"totalEquity": "100000", "coin": []}]}
    })
    client.get_tickers = AsyncMock(return_value={
        "result": {"list": [{"symbol": "BTCUSDT", "lastPrice": "50000"}]}
    })
    client.get_instruments_info = AsyncMock(return_value={
        "result": {
            "list": [{
                "symbol": "BTCUSDT",
                "lotSizeFilter": {"minOrderQty": "0.001", "maxOrderQty": "100", "qtyStep": "0.001"},
            }]
        }
    })
    client.place_order = AsyncMock(return_value={"result": {"orderId": "bb-order-1"}})
    client.get_order_history = AsyncMock(return_value={
        "result": {
            "list": [{
                "orderId": "bb-order-1",
                "orderStatus": order_status,
                "cumExecQty": "0.02",
                "avgPrice": "50010",
            }]
        }
    })
    client.get_positions = AsyncMock(return_value={
        "result": {
            "list": [{
                "symbol": "BTCUSDT",
                "side": position_side,
                "size": position_size,
                "avgPrice": "48000",
                "markPrice": "50000",
            }]
        }
    })
    return client


@pytest.fixture(autouse=True)
def no_retry_backoff(monkeypatch):
    monkeypatch.setattr(settings, "read_retry_backoff_seconds", 0)


# =========================================================
# Helpers
# =========================================================


class TestRoundDownToStep:
    @pytest.mark.parametrize("qty,step,expected", [
        (0.0234, 0.001, 0.023),
        (0.02, 0.001, 0.02),
        (12.7, 1.0, 12.0),
        (0.5, 0, 0.5),
    ])
    def test_rounding(self, qty, step, expected):
        assert round_down_to_step(qty, step) == expected


# =========================================================
# Positions
# =========================================================


class TestGetPosition:
    async def test_flat_when_size_zero(self):
        adapter = ByBitAdapter(_make_mock_bybit_client())
        position = await adapter.get_position("BTCUSD")

        assert position == {"side": "FLAT", "size": 0.0, "avg_price": None}
        adapter._client.get_positions.assert_awaited_once_with(symbol="BTCUSDT")

    async def test_short_position(self):
        adapter = ByBitAdapter(_make_mock_bybit_client(position_side="Sell", position_size="0.5"))
        position = await adapter.get_position("BTCUSD")

        assert position["side"] == "SHORT"
        assert position["size"] == 0.5
        assert position["avg_price"] == 48000.0

    async def test_read_is_retried(self):
        client = _make_mock_bybit_client(position_side="Buy", position_size="1")
        ok = client.get_positions.return_value
        client.get_positions = AsyncMock(side_effect=[ByBitError("timeout", 10000), ok])

        position = await ByBitAdapter(client).get_position("BTCUSD")

        assert position["side"] == "LONG"
        assert client.get_positions.await_count == 2


class TestListPositions:
    async def test_follows_cursor_and_skips_flat(self):
        client = _make_mock_bybit_client()
        client.get_all_positions = AsyncMock(side_effect=[
            {"result": {
                "list": [
                    {"symbol": "BTCUSDT", "side": "Buy", "size": "0.02", "avgPrice": "48000", "markPrice": "50000"},
                    {"symbol": "XRPUSDT", "side": "", "size": "0", "avgPrice": "0", "markPrice": "0.5"},
                ],
                "nextPageCursor": "page-2",
            }},
            {"result": {
                "list": [
                    {"symbol": "ETHUSDT", "side": "Sell", "size": "1.5", "avgPrice": "3300", "markPrice": "3200"},
                ],
                "nextPageCursor": "",
            }},
        ])

        positions = await ByBitAdapter(client).list_positions()

        assert positions == [
            {"symbol": "BTCUSDT", "side": "LONG", "size": 0.02, "avg_price": 48000.0, "mark_price": 50000.0},
            {"symbol": "ETHUSDT", "side": "SHORT", "size": 1.5, "avg_price": 3300.0, "mark_price": 3200.0},
        ]
        assert client.get_all_positions.await_args_list[1].kwargs["cursor"] == "page-2"

    def test_ledger_symbol_is_the_linear_contract(self):
        adapter = ByBitAdapter(_make_mock_bybit_client())

        assert adapter.ledger_symbol("BTCUSD") == "BTCUSDT"
        assert adapter.ledger_symbol("BTCUSDT") == "BTCUSDT"


# =========================================================
# Orders
# =========================================================


class TestPlaceOrder:
    async def test_market_order_from_notional(self):
        client = _make_mock_bybit_client()
        order = await ByBitAdapter(client).place_order("BTCUSD", "LONG", 1000.0)

        client.place_order.assert_awaited_once_with(symbol="BTCUSDT", side="Buy", qty="0.02")
        assert order == {"order_id": "bb-order-1", "avg_price": 50010.0, "size": 0.02}

    async def test_short_is_sell(self):
        client = _make_mock_bybit_client()
        await ByBitAdapter(client).place_order("BTCUSD", "SHORT", 1000.0)
        assert client.place_order.await_args.kwargs["side"] == "Sell"

    async def test_below_minimum_size_raises(self):
        client = _make_mock_bybit_client()
        with pytest.raises(ByBitError):
            await ByBitAdapter(client).place_order("BTCUSD", "LONG", 10.0)
        client.place_order.assert_not_called()

    async def test_order_placement_is_not_retried(self):
        client = _make_mock_bybit_client()
        client.place_order = AsyncMock(side_effect=ByBitError("system busy", 10016))

        with pytest.raises(ByBitError):
            await ByBitAdapter(client).place_order("BTCUSD", "LONG", 1000.0)
        assert client.place_order.await_count == 1

    async def test_missing_fill_info_falls_back_to_qty(self):
        client = _make_mock_bybit_client()
        client.get_order_history = AsyncMock(return_value={"result": {"list": []}})

        order = await ByBitAdapter(client).place_order("BTCUSD", "LONG", 1000.0)
        assert order["avg_price"] is None
        assert order["size"] == 0.02


class TestClosePosition:
    async def test_reduce_only_opposite_side(self):
        client = _make_mock_bybit_client(position_side="Buy", position_size="0.5")
        result = await ByBitAdapter(client).close_position("BTCUSD")

        client.place_order.assert_awaited_once_with(
            symbol="BTCUSDT", side="Sell", qty="0.5", reduce_only=True
        )
        assert result["closed"] is True
        assert result["exit_price"] == 50010.0

    async def test_unfilled_close_is_unconfirmed(self):
        client = _make_mock_bybit_client(position_side="Sell", position_size="0.5", order_status="New")
        result = await ByBitAdapter(client).close_position("BTCUSD")

        assert client.place_order.await_args.kwargs["side"] == "Buy"
        assert result["closed"] is False

    async def test_flat_symbol_sends_nothing(self):
        client = _make_mock_bybit_client()
        result = await ByBitAdapter(client).close_position("BTCUSD")

        client.place_order.assert_not_called()
        assert result == {"exit_price": None, "closed": True}


class TestEquity:
    async def test_total_equity(self):
        assert await ByBitAdapter(_make_mock_bybit_client()).get_account_equity() == 100000.0

    async def test_empty_wallet(self):
        client = _make_mock_bybit_client()
        client.get_wallet_balance = AsyncMock(return_value={"result": {"list": []}})
        assert await ByBitAdapter(client).get_account_equity() == 0.0
