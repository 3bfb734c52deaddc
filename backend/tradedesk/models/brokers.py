"""Broker models: OAuth connections to external brokers."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from tradedesk.database import Base
from tradedesk.utils.time_utils import utcnow


class BrokerConnection(Base):
    """
    OAuth connection to an external broker (Tradovate, ProjectX, Alpaca).

    Tokens are stored sealed (Fernet) when ENCRYPTION_KEY is configured; use
    tradedesk.encryption.unseal() to read them. Only the token lifecycle
    manager writes the token fields.
    """
    __tablename__ = "broker_connections"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    broker_type = Column(String, nullable=False)  # "tradovate", "projectx", "alpaca"
    account_ref = Column(String, nullable=True)  # Broker-side account id/name

    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expiry = Column(DateTime, nullable=True)  # Naive UTC
    is_valid = Column(Boolean, default=True)  # False after a failed refresh; needs re-auth

    auto_sync_enabled = Column(Boolean, default=False)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String, nullable=True)  # "success", "partial", "failed"
    last_sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def ledger_key(self) -> str:
        """exchange_id used for this connection's ledger rows."""
        return f"{self.broker_type}:{self.id}"

    def __repr__(self):
        return f"<BrokerConnection {self.id} {self.broker_type} valid={self.is_valid}>"
