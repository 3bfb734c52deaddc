"""
Application Constants

Centralized enums and string constants for sides, statuses and sources.
"""

from enum import Enum


class Side(str, Enum):
    """Exposure for a symbol. FLAT is never stored on a ledger row."""

    FLAT = "FLAT"
    LONG = "LONG"
    SHORT = "SHORT"


# PositionRecord.status
STATUS_OPEN = "open"
STATUS_CLOSED = "closed"

# PositionRecord.source
SOURCE_SIGNAL = "signal"
SOURCE_MANUAL = "manual"
SOURCE_EXTERNAL = "external"

# PositionRecord.exit_reason values written by the core
EXIT_DIRECT_SIGNAL = "direct_signal"
EXIT_SIGNAL_REVERSAL = "signal_reversal"
EXIT_CLOSED_EXTERNALLY = "closed_externally"

# TradeIntent.status
INTENT_PENDING = "pending"
INTENT_CLOSE_CONFIRMED = "close_confirmed"
INTENT_COMPLETED = "completed"
INTENT_FAILED = "failed"
INTENT_EXPIRED = "expired"

# DirectiveLog.status
DIRECTIVE_PROCESSED = "processed"
DIRECTIVE_REJECTED = "rejected"
DIRECTIVE_FAILED = "failed"
DIRECTIVE_DUPLICATE = "duplicate"

# BrokerConnection.broker_type
BROKER_TRADOVATE = "tradovate"
BROKER_PROJECTX = "projectx"
BROKER_ALPACA = "alpaca"
