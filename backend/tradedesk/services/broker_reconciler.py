"""
Broker Reconciler

Brings ledger rows in line with the positions a venue reports. Two kinds
of ledger key are covered:
- broker connections ("<broker_type>:<id>"), read through a BrokerClient
- execution exchanges ("paper", "bybit"), read through an ExchangeClient

Runs on an external schedule and may overlap with live directive
processing, so every write is conditional on the row still being open.

Per symbol, each in its own transaction:
- on both sides (same symbol and side): refresh quantity/mark/PnL/metadata
  when something changed
- local only: close with exit_reason="closed_externally" at the last mark
- venue only: create an open row with source="external"

A row whose side differs from the venue's is closed and recreated.
Reconciliation never calls venue mutation endpoints.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.broker_clients.base import BrokerClient, BrokerPosition
from tradedesk.broker_clients.factory import create_broker_client
from tradedesk.constants import EXIT_CLOSED_EXTERNALLY, SOURCE_EXTERNAL, Side
from tradedesk.database import async_session_maker
from tradedesk.exceptions import AppError, AuthError, NotFoundError, ReconciliationError
from tradedesk.exchange_clients.base import ExchangeClient
from tradedesk.exchange_clients.factory import get_exchange_client
from tradedesk.models import BrokerConnection, ExchangeConfig
from tradedesk.services.token_manager import TokenLifecycleManager, token_manager as default_token_manager
from tradedesk.trading_engine.order_executor import load_exchange_config
from tradedesk.trading_engine.signal_ledger import SignalLedger, run_statement
from tradedesk.trading_engine.symbol_locks import get_symbol_lock
from tradedesk.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class _LocalRow:
    """Plain copy of an open ledger row; survives rollbacks."""
    id: int
    symbol: str
    side: str
    entry_price: Optional[float]
    quantity: Optional[float]
    mark_price: Optional[float]
    unrealized_pnl_pct: Optional[float]
    metadata_snapshot: Optional[Dict[str, Any]]


def _snapshot(record) -> _LocalRow:
    return _LocalRow(
        id=record.id,
        symbol=record.symbol,
        side=record.side,
        entry_price=record.entry_price,
        quantity=record.quantity,
        mark_price=record.mark_price,
        unrealized_pnl_pct=record.unrealized_pnl_pct,
        metadata_snapshot=record.metadata_snapshot,
    )


def _changed_fields(local: _LocalRow, remote: BrokerPosition) -> Dict[str, Any]:
    """Fields that differ between the ledger row and the venue's view."""
    changes: Dict[str, Any] = {}
    if local.quantity != remote.qty:
        changes["quantity"] = remote.qty
    if remote.mark_price is not None and local.mark_price != remote.mark_price:
        changes["mark_price"] = remote.mark_price
    if remote.unrealized_pnl_pct is not None and local.unrealized_pnl_pct != remote.unrealized_pnl_pct:
        changes["unrealized_pnl_pct"] = remote.unrealized_pnl_pct
    metadata = remote.raw or None
    if metadata is not None and local.metadata_snapshot != metadata:
        changes["metadata_snapshot"] = metadata
    return changes


def _venue_position(symbol: str, position: Dict[str, Any], mark_price: Optional[float] = None) -> Optional[BrokerPosition]:
    """Convert an ExchangeClient position dict; None when flat."""
    if position.get("side") not in (Side.LONG.value, Side.SHORT.value) or not position.get("size"):
        return None
    return BrokerPosition(
        symbol=symbol,
        side=position["side"],
        qty=float(position["size"]),
        avg_entry_price=position.get("avg_price"),
        mark_price=position.get("mark_price") or mark_price,
    )


def _new_result(**identity) -> Dict[str, Any]:
    result: Dict[str, Any] = dict(identity)
    result.update({
        "updated": 0,
        "closed": 0,
        "created": 0,
        "failed": 0,
        "skipped": 0,
        "errors": [],
        "flagged": [],
    })
    return result


def _index_local_rows(records, ledger_key: str, result: Dict[str, Any]) -> Dict[str, _LocalRow]:
    """Newest open row per symbol; older duplicates are flagged, not merged."""
    local_rows: Dict[str, _LocalRow] = {}
    for record in records:
        row = _snapshot(record)
        if row.symbol in local_rows:
            logger.error(
                f"{ledger_key}: duplicate open row {row.id} for {row.symbol} "
                f"(keeping {local_rows[row.symbol].id})"
            )
            result["flagged"].append({"symbol": row.symbol, "record_id": row.id})
            result["skipped"] += 1
            continue
        local_rows[row.symbol] = row
    return local_rows


class BrokerReconciler:
    """
    Args:
        session_maker: async session factory
        token_manager: supplies access tokens for broker calls
        client_factory: builds a BrokerClient from (broker_type, token_provider, account_ref)
        exchange_factory: returns the ExchangeClient for an exchange_id
    """

    def __init__(
        self,
        session_maker: Callable = async_session_maker,
        token_manager: Optional[TokenLifecycleManager] = None,
        client_factory: Callable[..., BrokerClient] = create_broker_client,
        exchange_factory: Callable[[str], ExchangeClient] = get_exchange_client,
    ):
        self._session_maker = session_maker
        self._token_manager = token_manager or default_token_manager
        self._client_factory = client_factory
        self._exchange_factory = exchange_factory

    async def _fetch_remote(self, connection_id: int, broker_type: str, account_ref: Optional[str]) -> List[BrokerPosition]:
        client = self._client_factory(
            broker_type,
            token_provider=self._token_manager.token_provider(connection_id),
            account_ref=account_ref,
        )
        try:
            return await client.list_positions()
        finally:
            await client.close()

    async def _reconcile_symbol(
        self,
        db: AsyncSession,
        ledger_key: str,
        symbol: str,
        local: Optional[_LocalRow],
        remote: Optional[BrokerPosition],
        result: Dict[str, Any],
    ):
        """Apply the update/close/create rule for one symbol."""
        ledger = SignalLedger(db)
        try:
            if local is not None:
                if remote is not None and remote.side == local.side:
                    changes = _changed_fields(local, remote)
                    if not changes:
                        return
                    if await ledger.update_open_fields(local.id, changes):
                        result["updated"] += 1
                    else:
                        result["skipped"] += 1
                    return

                # Gone at the venue, or flipped to the other side
                exit_price = local.mark_price
                if not await ledger.close_open_record(
                    local.id, local.side, local.entry_price, exit_price, EXIT_CLOSED_EXTERNALLY
                ):
                    # Closed concurrently; leave the symbol for the next pass
                    result["skipped"] += 1
                    return
                result["closed"] += 1
                logger.info(f"{ledger_key}: closed {local.side} {symbol} externally @ {exit_price} (row {local.id})")

            if remote is not None:
                await ledger.open_position(
                    symbol,
                    ledger_key,
                    remote.side,
                    entry_price=remote.avg_entry_price,
                    entry_time=remote.opened_at or utcnow(),
                    source=SOURCE_EXTERNAL,
                    quantity=remote.qty,
                    mark_price=remote.mark_price,
                    unrealized_pnl_pct=remote.unrealized_pnl_pct,
                    metadata_snapshot=remote.raw or None,
                )
                result["created"] += 1
        except (AppError, SQLAlchemyError) as e:
            await db.rollback()
            self._record_failure(result, ledger_key, symbol, local.id if local else None, e)

    # ------------------------------------------------------------------
    # Broker connections
    # ------------------------------------------------------------------

    async def run_reconciliation(self, connection_id: int) -> Dict[str, Any]:
        """
        Reconcile one connection.

        Returns {"connection_id", "updated", "closed", "created", "failed",
        "skipped", "errors", "flagged"}.

        Raises:
            NotFoundError: unknown connection
            AuthError: connection invalid or token refresh failed
            UpstreamError: broker position list could not be read
        """
        async with self._session_maker() as db:
            connection = await db.get(BrokerConnection, connection_id)
            if connection is None:
                raise NotFoundError(f"Broker connection {connection_id} not found")
            if not connection.is_valid:
                raise AuthError(f"Broker connection {connection_id} needs re-authentication", connection_id=connection_id)
            broker_type = connection.broker_type
            account_ref = connection.account_ref
            ledger_key = connection.ledger_key

        remote_positions = await self._fetch_remote(connection_id, broker_type, account_ref)

        result = _new_result(connection_id=connection_id)

        remote_by_symbol: Dict[str, BrokerPosition] = {}
        for position in remote_positions:
            symbol = position.symbol.upper()
            if symbol in remote_by_symbol:
                logger.warning(f"{ledger_key}: broker reported {symbol} twice, using first entry")
                continue
            remote_by_symbol[symbol] = position

        async with self._session_maker() as db:
            local_rows = _index_local_rows(await SignalLedger(db).find_all_open(ledger_key), ledger_key, result)
            for symbol in sorted(set(local_rows) | set(remote_by_symbol)):
                await self._reconcile_symbol(
                    db, ledger_key, symbol, local_rows.get(symbol), remote_by_symbol.get(symbol), result
                )

        self._log_result(ledger_key, result)
        return result

    # ------------------------------------------------------------------
    # Execution exchanges
    # ------------------------------------------------------------------

    async def run_exchange_reconciliation(self, exchange_id: str) -> Dict[str, Any]:
        """
        Reconcile the ledger rows of one execution exchange.

        Repairs fills the ledger never recorded (an OPEN that filled before
        its ledger write failed) and rows left open after a manual close.
        Each symbol is re-read under its symbol lock, so a directive running
        at the same time is never second-guessed.

        Returns {"exchange_id", "updated", "closed", "created", "failed",
        "skipped", "errors", "flagged"}.

        Raises:
            NotFoundError / ValidationError: no active config for the exchange
            UpstreamError: the position list could not be read
        """
        exchange_id = exchange_id.lower()
        async with self._session_maker() as db:
            await load_exchange_config(db, exchange_id)

        exchange = self._exchange_factory(exchange_id)
        listed: Dict[str, Dict[str, Any]] = {}
        for position in await exchange.list_positions():
            listed.setdefault(exchange.ledger_symbol(position["symbol"]), position)

        result = _new_result(exchange_id=exchange_id)

        async with self._session_maker() as db:
            local_rows = _index_local_rows(await SignalLedger(db).find_all_open(exchange_id), exchange_id, result)

        for symbol in sorted(set(local_rows) | set(listed)):
            mark_price = listed.get(symbol, {}).get("mark_price")
            async with get_symbol_lock(exchange_id, symbol):
                async with self._session_maker() as db:
                    try:
                        record = await SignalLedger(db).find_open(symbol, exchange_id)
                        position = await exchange.get_position(symbol)
                    except AppError as e:
                        self._record_failure(result, exchange_id, symbol, None, e)
                        continue
                    local = _snapshot(record) if record is not None else None
                    remote = _venue_position(symbol, position, mark_price)
                    await self._reconcile_symbol(db, exchange_id, symbol, local, remote, result)

        self._log_result(exchange_id, result)
        return result

    async def run_exchange_sync(self) -> Dict[str, Any]:
        """Reconcile every exchange with an active config; failures stay per exchange."""
        async with self._session_maker() as db:
            rows = await run_statement(
                db,
                select(ExchangeConfig.name).where(ExchangeConfig.is_active.is_(True)).distinct(),
                "config read",
            )
            exchange_ids = sorted({row[0].lower() for row in rows.all()})

        summary: Dict[str, Any] = {"exchanges": len(exchange_ids), "succeeded": 0, "failed": 0, "results": {}}
        for exchange_id in exchange_ids:
            try:
                summary["results"][exchange_id] = await self.run_exchange_reconciliation(exchange_id)
                summary["succeeded"] += 1
            except AppError as e:
                logger.error(f"Exchange sync failed for {exchange_id}: {e.message}")
                summary["results"][exchange_id] = {"error": e.message}
                summary["failed"] += 1
        return summary

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _log_result(ledger_key: str, result: Dict[str, Any]):
        logger.info(
            f"Reconciled {ledger_key}: updated={result['updated']} closed={result['closed']} "
            f"created={result['created']} failed={result['failed']} skipped={result['skipped']}"
        )

    @staticmethod
    def _record_failure(result: Dict[str, Any], ledger_key: str, symbol: str, record_id: Optional[int], error: Exception):
        message = error.message if isinstance(error, AppError) else str(error)
        failure = ReconciliationError(message, symbol=symbol, record_id=record_id)
        logger.error(f"{ledger_key}: reconciliation failed for {symbol} (row {record_id}): {message}")
        result["failed"] += 1
        result["errors"].append(failure.to_dict())

    async def run_auto_sync(self) -> Dict[str, Any]:
        """
        Reconcile every valid connection with auto_sync_enabled.

        One connection's failure never stops the others. last_sync_* is
        recorded on each connection.
        """
        async with self._session_maker() as db:
            rows = await db.execute(
                select(BrokerConnection.id).where(
                    BrokerConnection.auto_sync_enabled.is_(True),
                    BrokerConnection.is_valid.is_(True),
                )
            )
            connection_ids = [row[0] for row in rows.all()]

        summary: Dict[str, Any] = {"connections": len(connection_ids), "succeeded": 0, "failed": 0, "results": {}}
        for connection_id in connection_ids:
            error: Optional[str] = None
            try:
                outcome = await self.run_reconciliation(connection_id)
                status = "partial" if outcome["failed"] else "success"
                summary["succeeded"] += 1
            except AppError as e:
                logger.error(f"Auto-sync failed for connection {connection_id}: {e.message}")
                outcome = {"error": e.message}
                status = "failed"
                error = e.message
                summary["failed"] += 1

            summary["results"][connection_id] = outcome
            await self._record_sync_status(connection_id, status, error)

        return summary

    async def _record_sync_status(self, connection_id: int, status: str, error: Optional[str]):
        async with self._session_maker() as db:
            connection = await db.get(BrokerConnection, connection_id)
            if connection is None:
                return
            connection.last_sync_at = utcnow()
            connection.last_sync_status = status
            connection.last_sync_error = error[:1000] if error else None
            try:
                await db.commit()
            except SQLAlchemyError as e:
                await db.rollback()
                logger.error(f"Failed to record sync status for connection {connection_id}: {e}")


broker_reconciler = BrokerReconciler()
