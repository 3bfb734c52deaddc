"""
Alpaca Broker Client

Uses alpaca-py's TradingClient with an OAuth token. alpaca-py is
synchronous, so calls run through asyncio.to_thread(). A TradingClient is
built per call because the access token can rotate between calls.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from tradedesk.broker_clients.base import BrokerClient, BrokerPosition, to_float
from tradedesk.config import settings
from tradedesk.constants import BROKER_ALPACA, Side
from tradedesk.exceptions import AuthError, UpstreamError

logger = logging.getLogger(__name__)


def _side_value(side: Any) -> str:
    # alpaca-py returns PositionSide enums; raw_data mode returns strings
    value = getattr(side, "value", side)
    return Side.SHORT.value if str(value).lower() == "short" else Side.LONG.value


class AlpacaClient(BrokerClient):
    """BrokerClient for Alpaca (OAuth apps)."""

    broker_type = BROKER_ALPACA

    def __init__(self, token_provider=None, account_ref=None, timeout=None, paper: Optional[bool] = None):
        super().__init__(token_provider, account_ref, timeout)
        self.paper = settings.alpaca_paper if paper is None else paper
        self.oauth_url = settings.alpaca_oauth_url
        self.client_id = settings.alpaca_client_id
        self.client_secret = settings.alpaca_client_secret

    async def _token_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        # Alpaca's token endpoint only takes form-encoded bodies
        if not self.client_id or not self.client_secret:
            raise AuthError("alpaca OAuth credentials not configured")
        body = {"client_id": self.client_id, "client_secret": self.client_secret, **payload}
        return await self._request("POST", self.oauth_url, authorized=False, data=body)

    async def _trading_client(self):
        from alpaca.trading.client import TradingClient

        return TradingClient(oauth_token=await self._access_token(), paper=self.paper)

    async def _call(self, description: str, func, *args):
        from alpaca.common.exceptions import APIError

        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(f"Alpaca {description} timed out")
            raise UpstreamError(f"Alpaca {description} timed out", venue=self.broker_type)
        except APIError as e:
            status = getattr(e, "status_code", None)
            logger.error(f"Alpaca {description} failed ({status}): {e}")
            if status in (401, 403):
                raise AuthError(f"Alpaca rejected credentials ({status})")
            raise UpstreamError(f"Alpaca {description} failed: {e}", venue=self.broker_type, code=status)

    async def list_positions(self) -> List[BrokerPosition]:
        client = await self._trading_client()
        raw_positions = await self._call("get_all_positions", client.get_all_positions)

        positions = []
        for p in raw_positions:
            qty = abs(to_float(p.qty) or 0.0)
            if qty <= 0:
                continue
            plpc = to_float(p.unrealized_plpc)
            positions.append(BrokerPosition(
                symbol=str(p.symbol).upper(),
                side=_side_value(p.side),
                qty=qty,
                avg_entry_price=to_float(p.avg_entry_price),
                mark_price=to_float(p.current_price),
                # Alpaca reports a ratio (0.0123 == 1.23%)
                unrealized_pnl_pct=plpc * 100 if plpc is not None else None,
                raw={
                    "asset_id": str(p.asset_id) if getattr(p, "asset_id", None) else None,
                    "exchange": str(getattr(p.exchange, "value", p.exchange)) if getattr(p, "exchange", None) else None,
                    "market_value": to_float(p.market_value),
                    "cost_basis": to_float(p.cost_basis),
                    "unrealized_pl": to_float(p.unrealized_pl),
                    "current_price": to_float(p.current_price),
                },
            ))
        return positions

    async def get_account(self) -> Dict[str, Any]:
        client = await self._trading_client()
        account = await self._call("get_account", client.get_account)
        return {
            "equity": to_float(account.equity) or 0.0,
            "buying_power": to_float(account.buying_power) or 0.0,
            "account_id": str(account.id),
            "account_number": account.account_number,
        }

    async def get_accounts(self) -> List[Dict[str, Any]]:
        # One brokerage account per OAuth grant
        return [await self.get_account()]

    async def get_user_info(self) -> Dict[str, Any]:
        account = await self.get_account()
        return {"id": account["account_id"], "account_number": account["account_number"]}
