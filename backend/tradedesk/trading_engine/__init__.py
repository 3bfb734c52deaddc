"""
Trading Engine Components

Core execution components:
- state_resolver: Maps current/desired side to an ActionPlan (no network)
- symbol_locks: Per-(exchange, symbol) serialization
- OrderExecutor: Runs plan steps against an exchange, tracks reversal intents
- SignalLedger: Persisted position rows and PnL accounting
- signal_processor: Orchestrates one directive end to end with audit logging
"""
