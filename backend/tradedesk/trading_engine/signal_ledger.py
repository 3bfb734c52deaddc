"""
Signal ledger: persisted record of opened/closed positions.

Owns PnL computation and the at-most-one-open-row-per-(symbol, exchange_id)
rule. Every write commits on its own so a confirmed exchange step is never
held hostage by a later step's failure.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.constants import SOURCE_SIGNAL, STATUS_CLOSED, STATUS_OPEN, Side
from tradedesk.exceptions import PersistenceError
from tradedesk.models import PositionRecord
from tradedesk.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def calculate_pnl_percentage(side: str, entry_price: Optional[float], exit_price: Optional[float]) -> Optional[float]:
    """
    LONG:  (exit - entry) / entry * 100
    SHORT: (entry - exit) / entry * 100

    None when either price is unknown or entry is zero.
    """
    if not entry_price or exit_price is None:
        return None
    if Side(side) == Side.LONG:
        return (exit_price - entry_price) / entry_price * 100
    return (entry_price - exit_price) / entry_price * 100


async def run_statement(db: AsyncSession, statement, action: str):
    """
    Execute a statement, turning database failures into PersistenceError.

    The session is rolled back so the caller can keep using it (audit log).
    """
    try:
        return await db.execute(statement)
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Ledger {action} failed: {e}")
        raise PersistenceError(f"Ledger {action} failed: {e.__class__.__name__}")


class SignalLedger:
    """Ledger operations bound to one AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, record_id: int) -> Optional[PositionRecord]:
        try:
            return await self.db.get(PositionRecord, record_id)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Ledger read of row {record_id} failed: {e}")
            raise PersistenceError(f"Ledger read failed: {e.__class__.__name__}")

    async def _open_rows(self, symbol: str, exchange_id: str) -> List[PositionRecord]:
        query = (
            select(PositionRecord)
            .where(
                PositionRecord.symbol == symbol.upper(),
                PositionRecord.exchange_id == exchange_id,
                PositionRecord.status == STATUS_OPEN,
            )
            .order_by(desc(PositionRecord.entry_time), desc(PositionRecord.id))
        )
        result = await run_statement(self.db, query, "read")
        return list(result.scalars().all())

    async def find_open(self, symbol: str, exchange_id: str) -> Optional[PositionRecord]:
        """Most recent open row for the key, or None."""
        rows = await self._open_rows(symbol, exchange_id)
        return rows[0] if rows else None

    async def find_all_open(self, exchange_id: str) -> List[PositionRecord]:
        query = (
            select(PositionRecord)
            .where(
                PositionRecord.exchange_id == exchange_id,
                PositionRecord.status == STATUS_OPEN,
            )
            .order_by(PositionRecord.symbol, desc(PositionRecord.entry_time), desc(PositionRecord.id))
        )
        result = await run_statement(self.db, query, "read")
        return list(result.scalars().all())

    async def find_duplicate_open_symbols(self, exchange_id: str) -> List[str]:
        """Symbols with more than one open row (an invariant violation)."""
        query = (
            select(PositionRecord.symbol)
            .where(
                PositionRecord.exchange_id == exchange_id,
                PositionRecord.status == STATUS_OPEN,
            )
            .group_by(PositionRecord.symbol)
            .having(func.count(PositionRecord.id) > 1)
        )
        result = await run_statement(self.db, query, "read")
        return [row[0] for row in result.all()]

    async def current_side(self, symbol: str, exchange_id: str) -> Side:
        record = await self.find_open(symbol, exchange_id)
        if record is None:
            return Side.FLAT
        return Side(record.side)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def commit(self, action: str):
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            logger.error(f"Ledger {action} rejected by constraint: {e}")
            raise PersistenceError(f"Ledger {action} rejected: an open position already exists")
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Ledger {action} failed: {e}")
            raise PersistenceError(f"Ledger {action} failed: {e}")

    async def open_position(
        self,
        symbol: str,
        exchange_id: str,
        side: Side,
        entry_price: Optional[float],
        entry_time: Optional[datetime] = None,
        source: str = SOURCE_SIGNAL,
        quantity: Optional[float] = None,
        entry_reason: Optional[str] = None,
        mark_price: Optional[float] = None,
        unrealized_pnl_pct: Optional[float] = None,
        metadata_snapshot: Optional[Dict[str, Any]] = None,
    ) -> PositionRecord:
        """
        Insert an open row.

        Raises:
            PersistenceError: an open row already exists for the key, or the write failed
        """
        side = Side(side)
        if side == Side.FLAT:
            raise PersistenceError("Cannot open a FLAT position")

        symbol = symbol.upper()
        existing = await self.find_open(symbol, exchange_id)
        if existing is not None:
            logger.error(
                f"Refusing to open {side.value} {exchange_id}:{symbol}: "
                f"open row {existing.id} ({existing.side}) already exists"
            )
            raise PersistenceError(f"Open position already exists for {symbol} on {exchange_id}")

        record = PositionRecord(
            symbol=symbol,
            exchange_id=exchange_id,
            side=side.value,
            status=STATUS_OPEN,
            entry_price=entry_price,
            entry_time=entry_time or utcnow(),
            source=source,
            quantity=quantity,
            entry_reason=entry_reason,
            mark_price=mark_price,
            unrealized_pnl_pct=unrealized_pnl_pct,
            metadata_snapshot=metadata_snapshot,
        )
        self.db.add(record)
        await self.commit("open")
        logger.info(f"Ledger opened {side.value} {exchange_id}:{symbol} @ {entry_price} (row {record.id}, {source})")
        return record

    async def close_position(
        self,
        symbol: str,
        exchange_id: str,
        exit_price: Optional[float],
        exit_time: Optional[datetime] = None,
        exit_reason: Optional[str] = None,
    ) -> Optional[PositionRecord]:
        """
        Close the most recent open row for the key.

        Returns the closed row, or None when nothing was open (no-op).
        Extra open rows for the key are logged and left untouched.
        """
        rows = await self._open_rows(symbol, exchange_id)
        if not rows:
            logger.info(f"No open ledger row for {exchange_id}:{symbol}, close is a no-op")
            return None

        if len(rows) > 1:
            logger.error(
                f"Ledger invariant violated: {len(rows)} open rows for {exchange_id}:{symbol} "
                f"(ids {[r.id for r in rows]}); closing most recent {rows[0].id} only"
            )

        record = rows[0]
        record.status = STATUS_CLOSED
        record.exit_price = exit_price
        record.exit_time = exit_time or utcnow()
        record.exit_reason = exit_reason
        record.pnl_percentage = calculate_pnl_percentage(record.side, record.entry_price, exit_price)
        await self.commit("close")
        logger.info(
            f"Ledger closed {record.side} {exchange_id}:{record.symbol} @ {exit_price} "
            f"(row {record.id}, pnl={record.pnl_percentage}, reason={exit_reason})"
        )
        return record

    async def update_open_fields(self, record_id: int, values: Dict[str, Any]) -> bool:
        """
        Update columns on a row only if it is still open.

        Returns False when the row was closed concurrently (nothing written).
        """
        values = dict(values)
        values["updated_at"] = utcnow()
        result = await run_statement(
            self.db,
            update(PositionRecord)
            .where(PositionRecord.id == record_id, PositionRecord.status == STATUS_OPEN)
            .values(**values),
            "update",
        )
        await self.commit("update")
        return result.rowcount == 1

    async def close_open_record(
        self,
        record_id: int,
        side: str,
        entry_price: Optional[float],
        exit_price: Optional[float],
        exit_reason: str,
        exit_time: Optional[datetime] = None,
    ) -> bool:
        """
        Close one row by id only if it is still open.

        PnL is computed only when an exit price is known. Returns False when
        the row was closed concurrently.
        """
        now = utcnow()
        result = await run_statement(
            self.db,
            update(PositionRecord)
            .where(PositionRecord.id == record_id, PositionRecord.status == STATUS_OPEN)
            .values(
                status=STATUS_CLOSED,
                exit_price=exit_price,
                exit_time=exit_time or now,
                exit_reason=exit_reason,
                pnl_percentage=calculate_pnl_percentage(side, entry_price, exit_price),
                updated_at=now,
            ),
            "close",
        )
        await self.commit("close")
        return result.rowcount == 1
