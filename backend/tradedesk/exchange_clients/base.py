"""
ExchangeClient Abstract Base Class

This module defines the interface that every execution venue must implement.
The order executor only talks to this interface, so adding a venue means
adding a subclass and registering it in the factory.

Design Philosophy:
- Methods return plain dicts with consistent keys
- Prices are floats in quote currency, sizes are floats in base units
- Sides use the engine's vocabulary ("LONG", "SHORT", "FLAT")
- Venue errors surface as UpstreamError subclasses with the raw message
- Only idempotent reads are retried; order placement never is
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from tradedesk.config import settings
from tradedesk.exceptions import UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_read(
    func: Callable[[], Awaitable[T]],
    description: str,
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """
    Run an idempotent read with bounded exponential backoff.

    Retries on UpstreamError, ConnectionError and asyncio.TimeoutError only.
    Never use this for calls that mutate venue state.
    """
    attempts = attempts or settings.read_retry_attempts
    backoff = settings.read_retry_backoff_seconds if backoff is None else backoff

    for attempt in range(attempts):
        try:
            return await func()
        except (UpstreamError, ConnectionError, asyncio.TimeoutError) as e:
            if attempt >= attempts - 1:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            wait_time = backoff * (2 ** attempt)
            logger.warning(
                f"{description} failed ({e}), retrying in {wait_time:.2f}s "
                f"(attempt {attempt + 1}/{attempts})"
            )
            await asyncio.sleep(wait_time)

    # attempts < 1
    raise UpstreamError(f"{description}: no attempts configured")


class ExchangeClient(ABC):
    """
    Abstract base class for execution venues (ByBit, paper).

    All implementations must provide these methods so the order executor
    can open, close and inspect positions without venue-specific code.
    """

    name: str = "exchange"

    @abstractmethod
    async def get_position(self, symbol: str) -> Dict[str, Any]:
        """
        Get the venue's current position for a symbol.

        Returns:
            {"side": "LONG"|"SHORT"|"FLAT", "size": float, "avg_price": float|None}
            A flat symbol returns side "FLAT" and size 0.0.
        """
        pass

    @abstractmethod
    async def place_order(self, symbol: str, side: str, notional: float) -> Dict[str, Any]:
        """
        Open exposure with a market order worth `notional` quote currency.

        Args:
            symbol: Venue symbol, e.g. "BTCUSDT"
            side: "LONG" or "SHORT"
            notional: Order value in quote currency

        Returns:
            {"order_id": str, "avg_price": float|None, "size": float}
        """
        pass

    @abstractmethod
    async def close_position(self, symbol: str) -> Dict[str, Any]:
        """
        Close the whole position for a symbol with a reduce-only market order.

        Returns:
            {"exit_price": float|None, "closed": bool}
            closed=False means the venue accepted the request but did not
            confirm the fill; callers must poll get_position().
        """
        pass

    @abstractmethod
    async def get_account_equity(self) -> float:
        """Total account equity in quote currency, read fresh on every call."""
        pass

    @abstractmethod
    async def list_positions(self) -> List[Dict[str, Any]]:
        """
        Every open position on the account, for reconciliation.

        Returns:
            [{"symbol": str, "side": "LONG"|"SHORT", "size": float,
              "avg_price": float|None, "mark_price": float|None}]
            Symbols are in ledger_symbol() form; flat symbols are omitted.
        """
        pass

    def ledger_symbol(self, symbol: str) -> str:
        """Symbol under which this venue's ledger rows are filed."""
        return symbol.upper()

    async def close(self):
        """Release any network resources held by the client."""
        return None
