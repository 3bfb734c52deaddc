"""
ByBit Adapter

Implements the ExchangeClient ABC for ByBit V5.
All orders go as linear perpetual (category="linear") - USDT perps,
one-way position mode.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from tradedesk.constants import Side
from tradedesk.exceptions import ValidationError
from tradedesk.exchange_clients.base import ExchangeClient, retry_read
from tradedesk.exchange_clients.bybit_client import (
    ByBitClient,
    ByBitError,
    to_bybit_symbol,
)

logger = logging.getLogger(__name__)

_SIDE_TO_ORDER = {Side.LONG: "Buy", Side.SHORT: "Sell"}
_POSITION_SIDE = {"Buy": Side.LONG, "Sell": Side.SHORT}


def _to_float(value: Any) -> Optional[float]:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result


def round_down_to_step(qty: float, step: float) -> float:
    """Floor qty to the instrument's qtyStep."""
    if step <= 0:
        return qty
    decimals = max(0, -int(math.floor(math.log10(step)))) if step < 1 else 0
    return round(math.floor(qty / step + 1e-9) * step, decimals)


class ByBitAdapter(ExchangeClient):
    """
    ExchangeClient implementation for ByBit V5 (unified account).

    - Market orders only; qty is derived from notional / last price
    - Closes are reduce-only market orders for the full position size
    """

    name = "bybit"

    def __init__(self, client: ByBitClient):
        self._client = client

    # ==========================================================
    # POSITIONS
    # ==========================================================

    async def get_position(self, symbol: str) -> Dict[str, Any]:
        bybit_symbol = to_bybit_symbol(symbol)
        resp = await retry_read(
            lambda: self._client.get_positions(symbol=bybit_symbol),
            f"ByBit get_positions {bybit_symbol}",
        )
        for pos in resp.get("result", {}).get("list", []):
            size = _to_float(pos.get("size")) or 0.0
            side = _POSITION_SIDE.get(pos.get("side", ""))
            if size > 0 and side:
                return {
                    "side": side.value,
                    "size": size,
                    "avg_price": _to_float(pos.get("avgPrice")),
                    "mark_price": _to_float(pos.get("markPrice")),
                }
        return {"side": Side.FLAT.value, "size": 0.0, "avg_price": None}

    async def list_positions(self) -> List[Dict[str, Any]]:
        """All open USDT-settled linear positions, following page cursors."""
        positions = []
        cursor = None
        while True:
            resp = await retry_read(
                lambda: self._client.get_all_positions(settle_coin="USDT", cursor=cursor),
                "ByBit get_positions (all)",
            )
            result = resp.get("result", {})
            for pos in result.get("list", []):
                size = _to_float(pos.get("size")) or 0.0
                side = _POSITION_SIDE.get(pos.get("side", ""))
                if size <= 0 or not side:
                    continue
                positions.append({
                    "symbol": pos.get("symbol", "").upper(),
                    "side": side.value,
                    "size": size,
                    "avg_price": _to_float(pos.get("avgPrice")),
                    "mark_price": _to_float(pos.get("markPrice")),
                })
            cursor = result.get("nextPageCursor")
            if not cursor:
                return positions

    def ledger_symbol(self, symbol: str) -> str:
        return to_bybit_symbol(symbol)

    # ==========================================================
    # ORDER EXECUTION
    # ==========================================================

    async def _get_last_price(self, bybit_symbol: str) -> float:
        resp = await retry_read(
            lambda: self._client.get_tickers(symbol=bybit_symbol),
            f"ByBit get_tickers {bybit_symbol}",
        )
        tickers = resp.get("result", {}).get("list", [])
        price = _to_float(tickers[0].get("lastPrice")) if tickers else None
        if not price or price <= 0:
            raise ByBitError(f"No last price for {bybit_symbol}")
        return price

    async def _get_lot_filter(self, bybit_symbol: str) -> Dict[str, float]:
        resp = await retry_read(
            lambda: self._client.get_instruments_info(symbol=bybit_symbol),
            f"ByBit get_instruments_info {bybit_symbol}",
        )
        instruments = resp.get("result", {}).get("list", [])
        if not instruments:
            raise ByBitError(f"No instrument info for {bybit_symbol}")
        lot = instruments[0].get("lotSizeFilter", {})
        return {
            "min_qty": _to_float(lot.get("minOrderQty")) or 0.0,
            "qty_step": _to_float(lot.get("qtyStep")) or 0.0,
        }

    async def _get_order_fill_info(self, bybit_symbol: str, order_id: str) -> Dict[str, Any]:
        """Get fill details for a market order.

        Returns avg_price/filled_size of None when history has no data yet;
        callers fall back to a position read in that case.
        """
        try:
            resp = await retry_read(
                lambda: self._client.get_order_history(symbol=bybit_symbol, order_id=order_id),
                f"ByBit get_order_history {order_id}",
            )
        except ByBitError as e:
            logger.warning(f"Failed to get fill info for {order_id}: {e}")
            return {"avg_price": None, "filled_size": None, "status": "UNKNOWN"}

        orders = resp.get("result", {}).get("list", [])
        if not orders:
            logger.warning(f"No order found in history for {order_id}")
            return {"avg_price": None, "filled_size": None, "status": "UNKNOWN"}

        order = orders[0]
        avg_price = _to_float(order.get("avgPrice"))
        return {
            "avg_price": avg_price if avg_price else None,
            "filled_size": _to_float(order.get("cumExecQty")),
            "status": order.get("orderStatus", ""),
        }

    async def place_order(self, symbol: str, side: str, notional: float) -> Dict[str, Any]:
        side = Side(side)
        if side not in _SIDE_TO_ORDER:
            raise ValidationError(f"Cannot open a {side.value} position")

        bybit_symbol = to_bybit_symbol(symbol)
        price = await self._get_last_price(bybit_symbol)
        lot = await self._get_lot_filter(bybit_symbol)
        qty = round_down_to_step(notional / price, lot["qty_step"])
        if qty <= 0 or qty < lot["min_qty"]:
            raise ByBitError(
                f"Order size {qty} below minimum {lot['min_qty']} for {bybit_symbol} "
                f"(notional {notional:.2f} @ {price})"
            )

        resp = await self._client.place_order(
            symbol=bybit_symbol,
            side=_SIDE_TO_ORDER[side],
            qty=str(qty),
        )
        order_id = resp.get("result", {}).get("orderId", "")
        logger.info(f"ByBit {side.value} order {order_id} placed: {bybit_symbol} qty={qty}")

        fill = await self._get_order_fill_info(bybit_symbol, order_id)
        return {
            "order_id": order_id,
            "avg_price": fill["avg_price"],
            "size": fill["filled_size"] if fill["filled_size"] else qty,
        }

    async def close_position(self, symbol: str) -> Dict[str, Any]:
        bybit_symbol = to_bybit_symbol(symbol)
        position = await self.get_position(symbol)
        if position["side"] == Side.FLAT.value:
            return {"exit_price": None, "closed": True}

        close_side = "Sell" if position["side"] == Side.LONG.value else "Buy"
        resp = await self._client.place_order(
            symbol=bybit_symbol,
            side=close_side,
            qty=str(position["size"]),
            reduce_only=True,
        )
        order_id = resp.get("result", {}).get("orderId", "")
        logger.info(f"ByBit close order {order_id} placed: {bybit_symbol} {position['side']} {position['size']}")

        fill = await self._get_order_fill_info(bybit_symbol, order_id)
        return {
            "exit_price": fill["avg_price"],
            "closed": fill["status"] == "Filled",
            "order_id": order_id,
        }

    # ==========================================================
    # ACCOUNT
    # ==========================================================

    async def get_account_equity(self) -> float:
        """Total account equity in USDT."""
        resp = await retry_read(self._client.get_wallet_balance, "ByBit get_wallet_balance")
        for acct in resp.get("result", {}).get("list", []):
            return _to_float(acct.get("totalEquity")) or 0.0
        return 0.0
