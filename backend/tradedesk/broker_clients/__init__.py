"""
Broker Client Layer

Read-only clients for external broker accounts, one per broker_type:
- tradovate: TradovateClient (REST)
- projectx: ProjectXClient (Gateway API)
- alpaca: AlpacaClient (alpaca-py)

Usage:
    from tradedesk.broker_clients.factory import create_broker_client

    client = create_broker_client("alpaca", token_provider=provider)
    positions = await client.list_positions()
"""

from tradedesk.broker_clients.base import BrokerClient, BrokerPosition, TokenGrant

__all__ = ["BrokerClient", "BrokerPosition", "TokenGrant"]
