"""
Broker Client Factory

Maps BrokerConnection.broker_type to its BrokerClient class.
"""

from typing import Dict, Optional, Type

from tradedesk.broker_clients.alpaca_client import AlpacaClient
from tradedesk.broker_clients.base import BrokerClient, TokenProvider
from tradedesk.broker_clients.projectx_client import ProjectXClient
from tradedesk.broker_clients.tradovate_client import TradovateClient
from tradedesk.constants import BROKER_ALPACA, BROKER_PROJECTX, BROKER_TRADOVATE
from tradedesk.exceptions import ValidationError

BROKER_CLIENTS: Dict[str, Type[BrokerClient]] = {
    BROKER_TRADOVATE: TradovateClient,
    BROKER_PROJECTX: ProjectXClient,
    BROKER_ALPACA: AlpacaClient,
}


def create_broker_client(
    broker_type: str,
    token_provider: Optional[TokenProvider] = None,
    account_ref: Optional[str] = None,
) -> BrokerClient:
    """
    Build the client for a broker type.

    Raises:
        ValidationError: unknown broker_type
    """
    client_class = BROKER_CLIENTS.get((broker_type or "").lower())
    if client_class is None:
        supported = ", ".join(BROKER_CLIENTS)
        raise ValidationError(f"Unsupported broker type: {broker_type} (supported: {supported})")
    return client_class(token_provider=token_provider, account_ref=account_ref)
