"""
Exchange Client Abstraction Layer

Every execution venue implements the ExchangeClient abstract base class so
the order executor can open, close and inspect positions the same way on
each of them.

Supported venues:
- bybit: ByBit V5 linear perpetuals (via ByBitAdapter)
- paper: in-memory simulated venue (via PaperExchangeClient)

Usage:
    from tradedesk.exchange_clients.factory import get_exchange_client

    exchange = get_exchange_client("bybit")
    position = await exchange.get_position("BTCUSDT")
"""

from tradedesk.exchange_clients.base import ExchangeClient

__all__ = ["ExchangeClient"]
