"""
Tests for backend/tradedesk/exchange_clients/factory.py

ByBitClient is patched so no pybit session is created.
"""

from unittest.mock import MagicMock, patch

import pytest

from tradedesk.config import settings
from tradedesk.exceptions import NotFoundError, ValidationError
from tradedesk.exchange_clients.bybit_adapter import ByBitAdapter
from tradedesk.exchange_clients.factory import (
    create_exchange_client,
    get_exchange_client,
    register_exchange_client,
)
from tradedesk.exchange_clients.paper_client import PaperExchangeClient


class TestCreateExchangeClient:
    """Tests for create_exchange_client()"""

    @patch("tradedesk.exchange_clients.factory.ByBitClient")
    def test_bybit_with_credentials(self, mock_bybit_client, monkeypatch):
        monkeypatch.setattr(settings, "bybit_api_key", "key")
        monkeypatch.setattr(settings, "bybit_api_secret", "secret")
        monkeypatch.setattr(settings, "bybit_testnet", True)
        mock_bybit_client.return_value = MagicMock()

        result = create_exchange_client("ByBit")

        assert isinstance(result, ByBitAdapter)
        mock_bybit_client.assert_called_once_with(
            api_key="key",
            api_secret="secret",
            testnet=True,
            timeout=settings.http_timeout_seconds,
        )

    def test_bybit_without_credentials(self, monkeypatch):
        monkeypatch.setattr(settings, "bybit_api_key", "")
        with pytest.raises(ValidationError):
            create_exchange_client("bybit")

    def test_paper_uses_starting_equity(self, monkeypatch):
        monkeypatch.setattr(settings, "paper_starting_equity", 2500.0)
        client = create_exchange_client("paper")

        assert isinstance(client, PaperExchangeClient)
        assert client.cash == 2500.0

    def test_unknown_exchange(self):
        with pytest.raises(NotFoundError) as exc_info:
            create_exchange_client("kraken")
        assert exc_info.value.message == "Unsupported exchange: kraken (supported: bybit, paper)"


class TestClientCache:
    def test_client_is_cached_per_exchange(self):
        first = get_exchange_client("paper")
        assert get_exchange_client("PAPER") is first

    def test_registered_client_is_returned(self):
        client = PaperExchangeClient(starting_equity=1.0)
        register_exchange_client("paper", client)
        assert get_exchange_client("paper") is client
