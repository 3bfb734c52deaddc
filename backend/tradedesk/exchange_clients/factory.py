"""
Exchange Client Factory

Creates (and caches) the ExchangeClient for an exchange_id. Credentials come
from settings; the cache keeps one client per venue so per-instance rate
limiting applies process-wide.
"""

import asyncio
import logging
from typing import Dict, Optional

from tradedesk.config import settings
from tradedesk.exceptions import NotFoundError, ValidationError
from tradedesk.exchange_clients.base import ExchangeClient
from tradedesk.exchange_clients.bybit_adapter import ByBitAdapter
from tradedesk.exchange_clients.bybit_client import ByBitClient
from tradedesk.exchange_clients.paper_client import PaperExchangeClient

logger = logging.getLogger(__name__)

SUPPORTED_EXCHANGES = ("bybit", "paper")

# Cache for exchange clients (key: exchange_id)
_exchange_client_cache: Dict[str, ExchangeClient] = {}


def create_exchange_client(exchange_id: str) -> ExchangeClient:
    """
    Build a new client for an exchange_id.

    Raises:
        NotFoundError: exchange_id is not a supported venue
        ValidationError: the venue's credentials are not configured
    """
    exchange_id = exchange_id.lower()

    if exchange_id == "bybit":
        if not settings.bybit_api_key or not settings.bybit_api_secret:
            raise ValidationError("ByBit requires BYBIT_API_KEY and BYBIT_API_SECRET")
        client = ByBitClient(
            api_key=settings.bybit_api_key,
            api_secret=settings.bybit_api_secret,
            testnet=settings.bybit_testnet,
            timeout=settings.http_timeout_seconds,
        )
        return ByBitAdapter(client)

    if exchange_id == "paper":
        return PaperExchangeClient(starting_equity=settings.paper_starting_equity)

    raise NotFoundError(f"Unsupported exchange: {exchange_id} (supported: {', '.join(SUPPORTED_EXCHANGES)})")


def get_exchange_client(exchange_id: str) -> ExchangeClient:
    """Get the cached client for an exchange_id, creating it on first use."""
    key = exchange_id.lower()
    if key not in _exchange_client_cache:
        _exchange_client_cache[key] = create_exchange_client(key)
        logger.info(f"Created exchange client for {key}")
    return _exchange_client_cache[key]


def register_exchange_client(exchange_id: str, client: ExchangeClient):
    """Install a pre-built client (paper venue with custom state, tests)."""
    _exchange_client_cache[exchange_id.lower()] = client


def clear_exchange_client_cache(exchange_id: Optional[str] = None):
    """Drop cached clients (call when credentials change)."""
    if exchange_id is not None:
        clients = [_exchange_client_cache.pop(exchange_id.lower(), None)]
    else:
        clients = list(_exchange_client_cache.values())
        _exchange_client_cache.clear()

    for client in clients:
        if client is None:
            continue
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(client.close())
        except RuntimeError:
            pass  # No event loop; client will be GC'd
