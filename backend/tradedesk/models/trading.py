"""Trading models: ledger positions, exchange configs, reversal intents, directive audit log."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    text,
)

from tradedesk.database import Base
from tradedesk.utils.time_utils import utcnow


class PositionRecord(Base):
    """
    One ledger row per position lifecycle (open -> closed).

    Rows are filed under a ledger key (`exchange_id`): an exchange name for
    signal-driven trades ("bybit", "paper") or "<broker_type>:<connection id>"
    for reconciled broker positions. At most one open row exists per
    (symbol, exchange_id); the partial unique index backs that up at the
    database level. Rows are never deleted.
    """
    __tablename__ = "position_records"
    __table_args__ = (
        Index(
            "uq_position_records_open_symbol",
            "symbol",
            "exchange_id",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, nullable=False, index=True)  # Upper-cased, e.g. "BTCUSDT"
    exchange_id = Column(String, nullable=False, index=True)  # Ledger key
    side = Column(String, nullable=False)  # "LONG" or "SHORT"
    status = Column(String, nullable=False, default="open", index=True)  # "open" or "closed"

    entry_price = Column(Float, nullable=True)
    entry_time = Column(DateTime, nullable=False, default=utcnow)
    exit_price = Column(Float, nullable=True)
    exit_time = Column(DateTime, nullable=True)
    pnl_percentage = Column(Float, nullable=True)  # Set on close when both prices are known

    source = Column(String, nullable=False, default="signal")  # "signal", "manual", "external"
    exit_reason = Column(String, nullable=True)  # "direct_signal", "signal_reversal", "closed_externally"
    entry_reason = Column(String, nullable=True)  # Reason tag from the entry alert

    # Reconciliation fields (broker-reported)
    quantity = Column(Float, nullable=True)
    mark_price = Column(Float, nullable=True)  # Last known mark, used as exit price when closed externally
    unrealized_pnl_pct = Column(Float, nullable=True)
    metadata_snapshot = Column(JSON, nullable=True)  # Raw broker fields from the last sync

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<PositionRecord {self.id} {self.exchange_id}:{self.symbol} {self.side} {self.status}>"


class ExchangeConfig(Base):
    """Per-exchange execution settings (read-only to the engine)."""
    __tablename__ = "exchange_configs"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)  # exchange_id, e.g. "bybit"
    position_sizing_percentage = Column(Float, nullable=False, default=10.0)  # % of equity per OPEN
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class TradeIntent(Base):
    """
    Persisted marker for an in-progress reversal.

    Written before the CLOSE leg; advanced to close_confirmed once the
    ledger row is closed and to completed once the OPEN leg is recorded.
    A close_confirmed intent left behind by a crash is resumed at startup.
    """
    __tablename__ = "trade_intents"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, nullable=False, index=True)
    exchange_id = Column(String, nullable=False, index=True)
    from_side = Column(String, nullable=False)
    to_side = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    reason_tag = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DirectiveLog(Base):
    """Audit row per inbound directive, including rejected ones."""
    __tablename__ = "directive_logs"

    id = Column(Integer, primary_key=True, index=True)
    raw_source = Column(Text, nullable=False)
    exchange_id = Column(String, nullable=True)
    symbol = Column(String, nullable=True, index=True)
    desired_side = Column(String, nullable=True)
    reason_tag = Column(String, nullable=True)
    dedupe_key = Column(String, nullable=True, index=True)  # "<exchange>:<symbol>:<signal time>"
    status = Column(String, nullable=False)  # "processed", "rejected", "failed", "duplicate"
    actions = Column(JSON, nullable=True)  # e.g. ["CLOSE", "OPEN_SHORT"]
    error = Column(Text, nullable=True)
    received_at = Column(DateTime, default=utcnow, index=True)
