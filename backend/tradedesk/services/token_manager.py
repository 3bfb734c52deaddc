"""
Broker token lifecycle.

Hands out valid access tokens per BrokerConnection, refreshing them shortly
before expiry. Refreshes are single-flighted per connection: concurrent
callers for one connection wait on the same lock and re-check the stored
expiry once they hold it, so only the first caller hits the broker.
Unrelated connections never wait on each other.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from tradedesk.broker_clients.base import BrokerClient, TokenProvider
from tradedesk.broker_clients.factory import create_broker_client
from tradedesk.config import settings
from tradedesk.database import async_session_maker
from tradedesk.encryption import seal, unseal
from tradedesk.exceptions import AppError, AuthError, NotFoundError
from tradedesk.models import BrokerConnection
from tradedesk.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """
    Args:
        session_maker: async session factory; each lookup uses its own session
        client_factory: builds a BrokerClient for a broker_type (refresh calls only)
        margin_seconds: refresh this long before expiry
    """

    def __init__(
        self,
        session_maker: Callable = async_session_maker,
        client_factory: Callable[..., BrokerClient] = create_broker_client,
        margin_seconds: Optional[int] = None,
    ):
        self._session_maker = session_maker
        self._client_factory = client_factory
        self._margin = timedelta(
            seconds=settings.token_refresh_margin_seconds if margin_seconds is None else margin_seconds
        )
        # Grows by one lock per connection id refreshed; entries are never dropped
        self._refresh_locks: Dict[int, asyncio.Lock] = {}

    def _get_refresh_lock(self, connection_id: int) -> asyncio.Lock:
        """Get or create the refresh lock for one connection."""
        if connection_id not in self._refresh_locks:
            self._refresh_locks[connection_id] = asyncio.Lock()
        return self._refresh_locks[connection_id]

    def needs_refresh(self, token_expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
        """True when now + margin >= expiry. Unknown expiry never triggers a refresh."""
        if token_expiry is None:
            return False
        return (now or utcnow()) + self._margin >= token_expiry

    async def _load(self, db, connection_id: int) -> BrokerConnection:
        connection = await db.get(BrokerConnection, connection_id)
        if connection is None:
            raise NotFoundError(f"Broker connection {connection_id} not found")
        if not connection.is_valid:
            raise AuthError(
                f"Broker connection {connection_id} needs re-authentication",
                connection_id=connection_id,
            )
        if not connection.access_token:
            raise AuthError(f"Broker connection {connection_id} has no access token", connection_id=connection_id)
        return connection

    async def get_access_token(self, connection_id: int) -> str:
        """
        Return a usable access token, refreshing it first if it is about to expire.

        Raises:
            NotFoundError: unknown connection
            AuthError: connection is invalid, or the refresh failed (connection
                is then marked invalid and needs user re-authentication)
        """
        async with self._session_maker() as db:
            connection = await self._load(db, connection_id)
            if not self.needs_refresh(connection.token_expiry):
                return unseal(connection.access_token)

        async with self._get_refresh_lock(connection_id):
            async with self._session_maker() as db:
                # Another caller may have refreshed while we waited
                connection = await self._load(db, connection_id)
                if not self.needs_refresh(connection.token_expiry):
                    return unseal(connection.access_token)

                return await self._refresh(db, connection)

    async def _refresh(self, db, connection: BrokerConnection) -> str:
        connection_id = connection.id
        broker_type = connection.broker_type
        logger.info(f"Refreshing {broker_type} token for connection {connection_id} (expires {connection.token_expiry})")

        client = self._client_factory(broker_type, account_ref=connection.account_ref)
        try:
            grant = await client.refresh_token(unseal(connection.refresh_token or ""))
        except AppError as e:
            logger.error(f"Token refresh failed for connection {connection_id}: {e.message}")
            await self._mark_invalid(db, connection, connection_id, e.message)
            raise AuthError(
                f"Token refresh failed for {broker_type} connection {connection_id}; re-authentication required",
                connection_id=connection_id,
            )
        finally:
            await client.close()

        connection.access_token = seal(grant.access_token)
        if grant.refresh_token:
            connection.refresh_token = seal(grant.refresh_token)
        connection.token_expiry = grant.expires_at
        connection.is_valid = True
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to persist refreshed token for connection {connection_id}: {e}")
            raise AuthError(f"Could not store refreshed token for connection {connection_id}", connection_id=connection_id)

        logger.info(f"Token refreshed for connection {connection_id}, new expiry {grant.expires_at}")
        return grant.access_token

    async def _mark_invalid(self, db, connection: BrokerConnection, connection_id: int, reason: str):
        connection.is_valid = False
        connection.last_sync_error = f"Token refresh failed: {reason}"[:1000]
        try:
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Failed to mark connection {connection_id} invalid: {e}")

    def token_provider(self, connection_id: int) -> TokenProvider:
        """Bind get_access_token to one connection for a BrokerClient."""
        async def _provide() -> str:
            return await self.get_access_token(connection_id)

        return _provide


# Shared instance so refresh locks are process-wide
token_manager = TokenLifecycleManager()
