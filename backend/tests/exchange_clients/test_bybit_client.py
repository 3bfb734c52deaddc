"""
Tests for backend/tradedesk/exchange_clients/bybit_client.py

Tests the ByBit raw API client including:
- Symbol conversion (to_bybit_symbol)
- Response checking (_check_response)
- Rate-limited API calls (pybit HTTP patched)
- Error wrapping into ByBitError
"""

from unittest.mock import MagicMock, patch

import pytest

from tradedesk.exceptions import UpstreamError
from tradedesk.exchange_clients.bybit_client import (
    ByBitClient,
    ByBitError,
    _check_response,
    to_bybit_symbol,
)


@pytest.fixture
def mock_http():
    with patch("pybit.unified_trading.HTTP") as http_cls:
        yield http_cls.return_value


@pytest.fixture
def client(mock_http):
    return ByBitClient(api_key="key", api_secret="secret", testnet=True, timeout=5)


# =========================================================
# Pure functions
# =========================================================


class TestToBybitSymbol:
    """Alert symbols map onto ByBit linear perpetuals."""

    @pytest.mark.parametrize("symbol,expected", [
        ("BTCUSD", "BTCUSDT"),
        ("btc-usd", "BTCUSDT"),
        ("ETHUSDT", "ETHUSDT"),
        ("BTCUSDT.P", "BTCUSDT"),
        ("ETHBTC", "ETHBTC"),
    ])
    def test_mapping(self, symbol, expected):
        assert to_bybit_symbol(symbol) == expected


class TestCheckResponse:
    def test_success_passes_through(self):
        resp = {"retCode": 0, "result": {"list": []}}
        assert _check_response(resp) is resp

    def test_error_raises_bybit_error(self):
        with pytest.raises(ByBitError) as exc_info:
            _check_response({"retCode": 110007, "retMsg": "ab not enough for new order"})
        assert exc_info.value.code == 110007
        assert "ab not enough" in exc_info.value.message
        assert isinstance(exc_info.value, UpstreamError)

    def test_missing_code_is_error(self):
        with pytest.raises(ByBitError):
            _check_response({})


# =========================================================
# API calls
# =========================================================


class TestByBitClientCalls:
    async def test_client_passes_testnet_and_timeout(self):
        with patch("pybit.unified_trading.HTTP") as http_cls:
            ByBitClient(api_key="k", api_secret="s", testnet=True, timeout=7.5)
        http_cls.assert_called_once_with(testnet=True, api_key="k", api_secret="s", timeout=7)

    async def test_place_order_builds_kwargs(self, client, mock_http):
        mock_http.place_order = MagicMock(return_value={"retCode": 0, "result": {"orderId": "o-1"}})

        resp = await client.place_order(symbol="BTCUSDT", side="sell", qty="0.01", reduce_only=True)

        assert resp["result"]["orderId"] == "o-1"
        mock_http.place_order.assert_called_once_with(
            category="linear",
            symbol="BTCUSDT",
            side="Sell",
            orderType="Market",
            qty="0.01",
            reduceOnly=True,
        )

    async def test_get_positions(self, client, mock_http):
        mock_http.get_positions = MagicMock(return_value={"retCode": 0, "result": {"list": []}})

        await client.get_positions(symbol="BTCUSDT")

        mock_http.get_positions.assert_called_once_with(category="linear", symbol="BTCUSDT")

    async def test_get_all_positions_pages_by_settle_coin(self, client, mock_http):
        mock_http.get_positions = MagicMock(return_value={"retCode": 0, "result": {"list": []}})

        await client.get_all_positions()
        await client.get_all_positions(cursor="page-2")

        first, second = mock_http.get_positions.call_args_list
        assert first.kwargs == {"category": "linear", "settleCoin": "USDT", "limit": 200}
        assert second.kwargs["cursor"] == "page-2"

    async def test_error_response_raises(self, client, mock_http):
        mock_http.get_wallet_balance = MagicMock(return_value={"retCode": 10003, "retMsg": "invalid api key"})

        with pytest.raises(ByBitError) as exc_info:
            await client.get_wallet_balance()
        assert exc_info.value.code == 10003

    async def test_transport_errors_are_wrapped(self, client, mock_http):
        mock_http.get_tickers = MagicMock(side_effect=ConnectionError("connection reset"))

        with pytest.raises(ByBitError) as exc_info:
            await client.get_tickers(symbol="BTCUSDT")
        assert "connection reset" in exc_info.value.message
