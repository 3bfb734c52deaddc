"""
Per-symbol serialization.

Directives for the same (exchange_id, symbol) run one at a time; different
symbols never wait on each other. Single process only.
"""

import asyncio
from typing import Dict, Tuple

# Grows by one lock per (exchange_id, symbol) ever seen; entries are never dropped
_symbol_locks: Dict[Tuple[str, str], asyncio.Lock] = {}


def get_symbol_lock(exchange_id: str, symbol: str) -> asyncio.Lock:
    """Get or create the asyncio.Lock for a symbol on an exchange."""
    key = (exchange_id.lower(), symbol.upper())
    if key not in _symbol_locks:
        _symbol_locks[key] = asyncio.Lock()
    return _symbol_locks[key]


def clear_symbol_locks():
    """Forget all locks (tests; locks must not be held)."""
    _symbol_locks.clear()
