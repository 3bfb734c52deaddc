"""
Database Models

All model classes are re-exported here:
    from tradedesk.models import PositionRecord, BrokerConnection, ...
"""

from tradedesk.database import Base  # noqa: F401 (re-exported for tests/conftest.py)
from tradedesk.models.brokers import BrokerConnection
from tradedesk.models.trading import (
    DirectiveLog,
    ExchangeConfig,
    PositionRecord,
    TradeIntent,
)

__all__ = [
    "Base",
    "BrokerConnection",
    "DirectiveLog",
    "ExchangeConfig",
    "PositionRecord",
    "TradeIntent",
]
