"""TradeDesk: signal execution and broker reconciliation backend."""
