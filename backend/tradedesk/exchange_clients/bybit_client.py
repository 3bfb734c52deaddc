"""
ByBit V5 Client

Thin wrapper around pybit's HTTP client with:
- Testnet toggle
- Symbol translation between alert format and ByBit (BTCUSD <-> BTCUSDT)
- asyncio.to_thread() wrappers for blocking pybit calls
- Per-instance rate limiting
- Error handling with meaningful exceptions
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from tradedesk.exceptions import UpstreamError

logger = logging.getLogger(__name__)

# ByBit rate limiting: order endpoints allow 10/s. 100ms min spacing
# keeps us clear of 10006 rate limit errors.
_BYBIT_MIN_INTERVAL = 0.10


class ByBitError(UpstreamError):
    """ByBit API error with error code"""
    def __init__(self, message: str, code: int = 0):
        super().__init__(message, venue="bybit", code=code)


def to_bybit_symbol(symbol: str) -> str:
    """Convert an alert symbol to a ByBit linear perpetual symbol.

    Examples:
        BTCUSD    -> BTCUSDT
        BTC-USD   -> BTCUSDT
        ETHUSDT   -> ETHUSDT
        BTCUSDT.P -> BTCUSDT
    """
    symbol = symbol.upper().replace("-", "")
    if symbol.endswith(".P"):
        symbol = symbol[:-2]
    if symbol.endswith("USD") and not symbol.endswith("USDT"):
        return symbol + "T"
    return symbol


def _check_response(resp: dict) -> dict:
    """Check ByBit response for errors and raise if needed."""
    ret_code = resp.get("retCode", -1)
    if ret_code != 0:
        msg = resp.get("retMsg", "Unknown ByBit error")
        safe_msg = msg[:200] if msg else "Unknown error"
        raise ByBitError(f"ByBit API error ({ret_code}): {safe_msg}", ret_code)
    return resp


class ByBitClient:
    """
    Low-level wrapper around pybit HTTP client.

    All methods are async via asyncio.to_thread() since pybit is synchronous.
    Transport failures from pybit/requests are re-raised as ByBitError.
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        timeout: float = 10.0,
    ):
        from pybit.unified_trading import HTTP

        self._testnet = testnet
        self._http = HTTP(
            testnet=testnet,
            api_key=api_key,
            api_secret=api_secret,
            timeout=int(timeout),
        )
        # Per-instance rate limiting (avoids cross-account interference)
        self._rate_lock = asyncio.Lock()
        self._last_request_time: float = 0.0
        logger.info(f"ByBitClient initialized (testnet={testnet})")

    async def _rate_limited_call(self, func, **kwargs) -> dict:
        """Execute a pybit call with per-instance rate limiting."""
        async with self._rate_lock:
            now = time.monotonic()
            elapsed = now - self._last_request_time
            if elapsed < _BYBIT_MIN_INTERVAL:
                await asyncio.sleep(_BYBIT_MIN_INTERVAL - elapsed)
            self._last_request_time = time.monotonic()
        try:
            resp = await asyncio.to_thread(func, **kwargs)
        except ByBitError:
            raise
        except Exception as e:
            # pybit raises its own InvalidRequestError/FailedRequestError and
            # lets requests' transport errors through
            code = getattr(e, "status_code", 0) or 0
            raise ByBitError(f"ByBit request failed: {e}", code) from e
        return _check_response(resp)

    # ----------------------------------------------------------
    # Account / Balance
    # ----------------------------------------------------------

    async def get_wallet_balance(self, account_type: str = "UNIFIED") -> dict:
        """Get wallet balance for unified account."""
        return await self._rate_limited_call(
            self._http.get_wallet_balance, accountType=account_type
        )

    # ----------------------------------------------------------
    # Market Data
    # ----------------------------------------------------------

    async def get_tickers(self, symbol: str, category: str = "linear") -> dict:
        """Get ticker data for one symbol."""
        return await self._rate_limited_call(
            self._http.get_tickers, category=category, symbol=symbol
        )

    async def get_instruments_info(self, symbol: str, category: str = "linear") -> dict:
        """Get lot size / tick size filters for a symbol."""
        return await self._rate_limited_call(
            self._http.get_instruments_info, category=category, symbol=symbol
        )

    # ----------------------------------------------------------
    # Orders
    # ----------------------------------------------------------

    async def place_order(
        self,
        symbol: str,
        side: str,
        qty: str,
        order_type: str = "Market",
        category: str = "linear",
        reduce_only: bool = False,
        order_link_id: Optional[str] = None,
    ) -> dict:
        """Place an order on ByBit. `side` is "Buy" or "Sell"."""
        kwargs: Dict[str, Any] = {
            "category": category,
            "symbol": symbol,
            "side": side.capitalize(),
            "orderType": order_type,
            "qty": qty,
        }
        if reduce_only:
            kwargs["reduceOnly"] = True
        if order_link_id:
            kwargs["orderLinkId"] = order_link_id
        return await self._rate_limited_call(self._http.place_order, **kwargs)

    async def get_order_history(
        self,
        symbol: str,
        order_id: str,
        category: str = "linear",
    ) -> dict:
        """Get order history for one order."""
        return await self._rate_limited_call(
            self._http.get_order_history,
            category=category,
            symbol=symbol,
            orderId=order_id,
        )

    # ----------------------------------------------------------
    # Positions
    # ----------------------------------------------------------

    async def get_positions(self, symbol: str, category: str = "linear") -> dict:
        """Get the position list for a symbol."""
        return await self._rate_limited_call(
            self._http.get_positions, category=category, symbol=symbol
        )

    async def get_all_positions(
        self,
        settle_coin: str = "USDT",
        category: str = "linear",
        cursor: Optional[str] = None,
    ) -> dict:
        """Get one page of every position settled in a coin."""
        kwargs = {"category": category, "settleCoin": settle_coin, "limit": 200}
        if cursor:
            kwargs["cursor"] = cursor
        return await self._rate_limited_call(self._http.get_positions, **kwargs)
