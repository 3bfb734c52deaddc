"""
Paper Trading Exchange Client

Simulates order execution in memory. Orders fill immediately at the mark
price set with set_mark_price(); realized PnL is added to equity on close.
Used for dry-running alert strategies and as the venue in engine tests.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from tradedesk.constants import Side
from tradedesk.exceptions import UpstreamError, ValidationError
from tradedesk.exchange_clients.base import ExchangeClient

logger = logging.getLogger(__name__)


class PaperExchangeClient(ExchangeClient):
    """
    Simulated exchange client.

    Every call is appended to `calls` as (method, symbol) so callers can see
    exactly what reached the venue. `fail_on` maps a method name to an
    exception raised on its next call.
    """

    name = "paper"

    def __init__(self, starting_equity: float = 10000.0, confirm_close: bool = True):
        self.cash = starting_equity
        self.marks: Dict[str, float] = {}
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.confirm_close = confirm_close  # False: close responses omit confirmation
        self.calls: List[tuple] = []
        self.fail_on: Dict[str, Exception] = {}

    def set_mark_price(self, symbol: str, price: float):
        self.marks[symbol.upper()] = float(price)

    def _record(self, method: str, symbol: Optional[str] = None):
        self.calls.append((method, symbol))
        error = self.fail_on.pop(method, None)
        if error is not None:
            raise error

    def _mark(self, symbol: str) -> float:
        price = self.marks.get(symbol)
        if price is None:
            raise UpstreamError(f"No paper price for {symbol}", venue=self.name)
        return price

    def call_count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def get_position(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        self._record("get_position", symbol)
        pos = self.positions.get(symbol)
        if not pos:
            return {"side": Side.FLAT.value, "size": 0.0, "avg_price": None}
        return {"side": pos["side"], "size": pos["size"], "avg_price": pos["avg_price"]}

    async def list_positions(self) -> List[Dict[str, Any]]:
        self._record("list_positions")
        return [
            {
                "symbol": symbol,
                "side": pos["side"],
                "size": pos["size"],
                "avg_price": pos["avg_price"],
                "mark_price": self.marks.get(symbol),
            }
            for symbol, pos in self.positions.items()
        ]

    async def place_order(self, symbol: str, side: str, notional: float) -> Dict[str, Any]:
        symbol = symbol.upper()
        side = Side(side)
        self._record("place_order", symbol)
        if side is Side.FLAT:
            raise ValidationError("Cannot open a FLAT position")

        price = self._mark(symbol)
        size = notional / price
        existing = self.positions.get(symbol)
        if existing and existing["side"] != side.value:
            raise UpstreamError(
                f"Paper venue rejects {side.value} on {symbol}: {existing['side']} position open",
                venue=self.name,
            )
        if existing:
            total = existing["size"] + size
            existing["avg_price"] = (existing["avg_price"] * existing["size"] + price * size) / total
            existing["size"] = total
        else:
            self.positions[symbol] = {"side": side.value, "size": size, "avg_price": price}

        order_id = f"paper-{uuid.uuid4().hex[:12]}"
        logger.info(f"Paper {side.value} {symbol}: {size:.8f} @ {price} ({order_id})")
        return {"order_id": order_id, "avg_price": price, "size": size}

    async def close_position(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        self._record("close_position", symbol)
        pos = self.positions.pop(symbol, None)
        if not pos:
            return {"exit_price": None, "closed": True}

        price = self._mark(symbol)
        direction = 1 if pos["side"] == Side.LONG.value else -1
        self.cash += direction * (price - pos["avg_price"]) * pos["size"]
        logger.info(f"Paper close {symbol} {pos['side']} @ {price}")
        if not self.confirm_close:
            return {"exit_price": None, "closed": False}
        return {"exit_price": price, "closed": True}

    async def get_account_equity(self) -> float:
        self._record("get_account_equity")
        unrealized = 0.0
        for symbol, pos in self.positions.items():
            mark = self.marks.get(symbol, pos["avg_price"])
            direction = 1 if pos["side"] == Side.LONG.value else -1
            unrealized += direction * (mark - pos["avg_price"]) * pos["size"]
        return self.cash + unrealized
