"""
Tradovate Broker Client

REST client for Tradovate futures accounts (OAuth bearer tokens).

- Positions: GET /position/list, contract names via GET /contract/items
- Account:   POST /cashBalance/getCashBalanceSnapshot
- User:      GET /user/session (OAuth apps)
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from tradedesk.broker_clients.base import BrokerClient, BrokerPosition, to_float
from tradedesk.config import settings
from tradedesk.constants import BROKER_TRADOVATE, Side
from tradedesk.utils.time_utils import to_naive_utc

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


class TradovateClient(BrokerClient):
    """BrokerClient for Tradovate."""

    broker_type = BROKER_TRADOVATE

    def __init__(self, token_provider=None, account_ref=None, timeout=None, base_url: Optional[str] = None):
        super().__init__(token_provider, account_ref, timeout)
        self.base_url = (base_url or settings.tradovate_api_url).rstrip("/")
        self.oauth_url = settings.tradovate_oauth_url
        self.client_id = settings.tradovate_client_id
        self.client_secret = settings.tradovate_client_secret

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _contract_names(self, contract_ids: List[int]) -> Dict[int, str]:
        if not contract_ids:
            return {}
        ids = ",".join(str(cid) for cid in sorted(set(contract_ids)))
        contracts = await self._read("GET", self._url("/contract/items"), params={"ids": ids})
        return {c["id"]: c.get("name", str(c["id"])) for c in contracts or [] if "id" in c}

    async def list_positions(self) -> List[BrokerPosition]:
        raw_positions = await self._read("GET", self._url("/position/list"))
        open_positions = [
            p for p in raw_positions or []
            if p.get("netPos")
            and (self.account_ref is None or str(p.get("accountId")) == str(self.account_ref))
        ]
        names = await self._contract_names([p["contractId"] for p in open_positions if "contractId" in p])

        positions = []
        for p in open_positions:
            net_pos = float(p["netPos"])
            positions.append(BrokerPosition(
                symbol=names.get(p.get("contractId"), str(p.get("contractId"))).upper(),
                side=Side.LONG.value if net_pos > 0 else Side.SHORT.value,
                qty=abs(net_pos),
                avg_entry_price=to_float(p.get("netPrice")),
                opened_at=_parse_timestamp(p.get("timestamp")),
                raw={
                    "position_id": p.get("id"),
                    "account_id": p.get("accountId"),
                    "contract_id": p.get("contractId"),
                    "net_pos": net_pos,
                    "net_price": to_float(p.get("netPrice")),
                },
            ))
        return positions

    async def get_account(self) -> Dict[str, Any]:
        account_id = self.account_ref
        if account_id is None:
            accounts = await self.get_accounts()
            if not accounts:
                return {"equity": 0.0, "buying_power": 0.0}
            account_id = accounts[0]["id"]

        snapshot = await self._read(
            "POST",
            self._url("/cashBalance/getCashBalanceSnapshot"),
            json={"accountId": int(account_id)},
        )
        total_cash = to_float(snapshot.get("totalCashValue")) or 0.0
        equity = to_float(snapshot.get("netLiq")) or total_cash
        margin = to_float(snapshot.get("initialMargin")) or 0.0
        return {
            "equity": equity,
            "buying_power": max(0.0, equity - margin),
            "account_id": account_id,
        }

    async def get_accounts(self) -> List[Dict[str, Any]]:
        return await self._read("GET", self._url("/account/list")) or []

    async def get_user_info(self) -> Dict[str, Any]:
        return await self._read("GET", self._url("/user/session"))
