"""
Shared test fixtures for the tradedesk backend tests.

Provides reusable fixtures for:
- Async database engines and sessions (in-memory SQLite)
- A paper exchange with mark prices set
- An active paper exchange config
"""

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from factories import add_exchange_config
from tradedesk.exchange_clients.factory import clear_exchange_client_cache
from tradedesk.exchange_clients.paper_client import PaperExchangeClient
from tradedesk.trading_engine.symbol_locks import clear_symbol_locks


# ---------------------------------------------------------------------------
# Global state
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_engine_state():
    """Symbol locks and cached exchange clients are process-wide."""
    clear_symbol_locks()
    clear_exchange_client_cache()
    yield
    clear_symbol_locks()
    clear_exchange_client_cache()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def async_engine():
    """Create an in-memory async SQLite engine for testing.

    StaticPool keeps one connection so every session sees the same database.
    """
    from tradedesk.models import Base

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine):
    """Session factory bound to the test engine (same options as the app's)."""
    return async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def file_session_maker(tmp_path):
    """Session factory on a file-backed SQLite database.

    For tests that run sessions concurrently: every session gets its own
    connection, as in production.
    """
    from tradedesk.models import Base

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tradedesk_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_maker):
    """Provide an async database session for tests."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# Exchange fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def paper_exchange():
    """Paper venue with $10,000 equity and BTCUSD/ETHUSD marks."""
    exchange = PaperExchangeClient(starting_equity=10000.0)
    exchange.set_mark_price("BTCUSD", 45000.0)
    exchange.set_mark_price("ETHUSD", 3200.0)
    return exchange


@pytest.fixture
async def paper_config(db_session):
    """Active paper exchange config sizing 10% of equity per OPEN."""
    return await add_exchange_config(db_session)
