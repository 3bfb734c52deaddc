"""
BrokerClient Abstract Base Class

Read-only interface to an external broker account, used by reconciliation.
Concrete clients are selected by BrokerConnection.broker_type through the
factory; callers never branch on the broker type themselves.

Access tokens are not held by the client: every call asks the injected
token_provider, which goes through the token lifecycle manager and so
always returns an unexpired token.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from tradedesk.config import settings
from tradedesk.exceptions import AuthError, UpstreamError
from tradedesk.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class BrokerPosition:
    """One open position as reported by a broker."""
    symbol: str
    side: str  # "LONG" or "SHORT"
    qty: float
    avg_entry_price: Optional[float] = None
    mark_price: Optional[float] = None
    unrealized_pnl_pct: Optional[float] = None
    opened_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenGrant:
    """Result of an OAuth code exchange or refresh."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]

    @classmethod
    def from_response(cls, data: Dict[str, Any], previous_refresh_token: Optional[str] = None) -> "TokenGrant":
        access_token = data.get("access_token") or data.get("accessToken")
        if not access_token:
            raise AuthError("Token response did not include an access token")
        expires_in = data.get("expires_in") or data.get("expiresIn")
        expires_at = utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        return cls(
            access_token=access_token,
            # Some brokers don't rotate refresh tokens
            refresh_token=data.get("refresh_token") or data.get("refreshToken") or previous_refresh_token,
            expires_at=expires_at,
        )


class BrokerClient(ABC):
    """
    Abstract base class for broker clients (Tradovate, ProjectX, Alpaca).

    Args:
        token_provider: async callable returning a valid access token
        account_ref: broker-side account id this connection is bound to
        timeout: per-request timeout in seconds
    """

    broker_type: str = "broker"
    oauth_url: str = ""
    client_id: str = ""
    client_secret: str = ""

    def __init__(
        self,
        token_provider: Optional[TokenProvider] = None,
        account_ref: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._token_provider = token_provider
        self.account_ref = account_ref
        self._timeout = timeout or settings.http_timeout_seconds
        self._client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self):
        """Close the underlying httpx client to release connections."""
        if self._client:
            await self._client.aclose()

    async def _access_token(self) -> str:
        if self._token_provider is None:
            raise AuthError(f"{self.broker_type} client has no token provider")
        return await self._token_provider()

    async def _request(self, method: str, url: str, authorized: bool = True, **kwargs) -> Any:
        """Make an HTTP request and return decoded JSON.

        Raises:
            AuthError: broker rejected the token (401/403)
            UpstreamError: timeout, transport failure or any other non-2xx
        """
        headers = dict(kwargs.pop("headers", {}) or {})
        if authorized:
            headers["Authorization"] = f"Bearer {await self._access_token()}"
        try:
            resp = await self._client.request(method, url, headers=headers, **kwargs)
            resp.raise_for_status()
        except httpx.TimeoutException:
            logger.error(f"{self.broker_type} timeout: {method} {url}")
            raise UpstreamError(f"{self.broker_type} request timed out", venue=self.broker_type)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            body = e.response.text[:200]
            logger.error(f"{self.broker_type} HTTP {status}: {method} {url} - {body}")
            if status in (401, 403):
                raise AuthError(f"{self.broker_type} rejected credentials ({status}): {body}")
            raise UpstreamError(f"{self.broker_type} API error ({status}): {body}", venue=self.broker_type, code=status)
        except httpx.HTTPError as e:
            logger.error(f"{self.broker_type} request failed: {method} {url} - {e}")
            raise UpstreamError(f"{self.broker_type} request failed: {e}", venue=self.broker_type)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            raise UpstreamError(f"{self.broker_type} returned non-JSON response", venue=self.broker_type)

    async def _read(self, method: str, url: str, **kwargs) -> Any:
        """Idempotent read with bounded exponential backoff on UpstreamError."""
        attempts = max(1, settings.read_retry_attempts)
        for attempt in range(attempts):
            try:
                return await self._request(method, url, **kwargs)
            except UpstreamError as e:
                if attempt >= attempts - 1:
                    raise
                wait_time = settings.read_retry_backoff_seconds * (2 ** attempt)
                logger.warning(
                    f"{self.broker_type} read {url} failed ({e}), retrying in {wait_time:.2f}s "
                    f"(attempt {attempt + 1}/{attempts})"
                )
                await asyncio.sleep(wait_time)

    # ------------------------------------------------------------------
    # OAuth primitives
    # ------------------------------------------------------------------

    async def _token_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.client_id or not self.client_secret:
            raise AuthError(f"{self.broker_type} OAuth credentials not configured")
        body = {"client_id": self.client_id, "client_secret": self.client_secret, **payload}
        return await self._request("POST", self.oauth_url, authorized=False, json=body)

    async def exchange_code_for_token(self, code: str, redirect_uri: str) -> TokenGrant:
        """Trade an OAuth authorization code for tokens."""
        data = await self._token_request({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
        })
        return TokenGrant.from_response(data)

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """Get a new access token with a refresh token. Not retried."""
        if not refresh_token:
            raise AuthError(f"No {self.broker_type} refresh token available")
        data = await self._token_request({
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        })
        return TokenGrant.from_response(data, previous_refresh_token=refresh_token)

    # ------------------------------------------------------------------
    # Account reads
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_positions(self) -> List[BrokerPosition]:
        """All open positions on the connected account."""
        pass

    @abstractmethod
    async def get_account(self) -> Dict[str, Any]:
        """Returns {"equity": float, "buying_power": float, ...}."""
        pass

    @abstractmethod
    async def get_user_info(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def get_accounts(self) -> List[Dict[str, Any]]:
        pass


def to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
