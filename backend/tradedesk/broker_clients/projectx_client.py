"""
ProjectX (TopstepX) Broker Client

Gateway API client. Search endpoints are POSTs with a JSON body and answer
{"success": bool, "errorCode": int, "errorMessage": str, ...}.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from tradedesk.broker_clients.base import BrokerClient, BrokerPosition, to_float
from tradedesk.config import settings
from tradedesk.constants import BROKER_PROJECTX, Side
from tradedesk.exceptions import UpstreamError
from tradedesk.utils.time_utils import to_naive_utc

logger = logging.getLogger(__name__)

# Gateway PositionType enum
_POSITION_TYPES = {1: Side.LONG.value, 2: Side.SHORT.value}


class ProjectXClient(BrokerClient):
    """BrokerClient for ProjectX / TopstepX."""

    broker_type = BROKER_PROJECTX

    def __init__(self, token_provider=None, account_ref=None, timeout=None, base_url: Optional[str] = None):
        super().__init__(token_provider, account_ref, timeout)
        self.base_url = (base_url or settings.projectx_api_url).rstrip("/")
        self.oauth_url = settings.projectx_oauth_url
        self.client_id = settings.projectx_client_id
        self.client_secret = settings.projectx_client_secret

    async def _gateway(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._read("POST", f"{self.base_url}{path}", json=body)
        if isinstance(data, dict) and data.get("success") is False:
            raise UpstreamError(
                f"ProjectX {path} failed ({data.get('errorCode')}): {data.get('errorMessage') or 'unknown error'}",
                venue=self.broker_type,
                code=data.get("errorCode"),
            )
        return data

    async def _account_id(self) -> int:
        if self.account_ref is not None:
            return int(self.account_ref)
        accounts = await self.get_accounts()
        if not accounts:
            raise UpstreamError("ProjectX returned no active accounts", venue=self.broker_type)
        return int(accounts[0]["id"])

    async def list_positions(self) -> List[BrokerPosition]:
        data = await self._gateway("/Position/searchOpen", {"accountId": await self._account_id()})
        positions = []
        for p in data.get("positions", []):
            side = _POSITION_TYPES.get(p.get("type"))
            size = to_float(p.get("size")) or 0.0
            if not side or size <= 0:
                continue
            opened_at = None
            if p.get("creationTimestamp"):
                try:
                    opened_at = to_naive_utc(datetime.fromisoformat(p["creationTimestamp"].replace("Z", "+00:00")))
                except ValueError:
                    logger.debug(f"Unparseable ProjectX timestamp {p['creationTimestamp']!r}")
            positions.append(BrokerPosition(
                symbol=str(p.get("contractId", "")).upper(),
                side=side,
                qty=size,
                avg_entry_price=to_float(p.get("averagePrice")),
                opened_at=opened_at,
                raw={
                    "position_id": p.get("id"),
                    "account_id": p.get("accountId"),
                    "contract_id": p.get("contractId"),
                    "type": p.get("type"),
                    "size": size,
                    "average_price": to_float(p.get("averagePrice")),
                },
            ))
        return positions

    async def get_accounts(self) -> List[Dict[str, Any]]:
        data = await self._gateway("/Account/search", {"onlyActiveAccounts": True})
        return data.get("accounts", [])

    async def get_account(self) -> Dict[str, Any]:
        account_id = await self._account_id()
        for account in await self.get_accounts():
            if int(account.get("id", -1)) == account_id:
                balance = to_float(account.get("balance")) or 0.0
                return {
                    "equity": balance,
                    "buying_power": balance if account.get("canTrade", True) else 0.0,
                    "account_id": account_id,
                    "name": account.get("name"),
                }
        raise UpstreamError(f"ProjectX account {account_id} not found", venue=self.broker_type)

    async def get_user_info(self) -> Dict[str, Any]:
        return await self._read("GET", f"{self.base_url}/user")
