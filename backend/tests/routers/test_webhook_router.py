"""
Tests for backend/tradedesk/routers/webhook_router.py

Requests go through the ASGI app with the database dependency pointed at
the test engine and the paper venue registered as the exchange client.
"""

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.config import settings
from tradedesk.database import get_db
from tradedesk.exceptions import AppError, UpstreamError
from tradedesk.exchange_clients.factory import register_exchange_client
from tradedesk.main import app_error_handler
from tradedesk.models import DirectiveLog, PositionRecord
from tradedesk.routers import webhook_router


@pytest.fixture
def app(session_maker, paper_exchange):
    app = FastAPI()
    app.include_router(webhook_router.router)
    app.add_exception_handler(AppError, app_error_handler)

    async def _get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    register_exchange_client("paper", paper_exchange)
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture(autouse=True)
def open_gate(monkeypatch):
    monkeypatch.setattr(settings, "webhook_secret", "")
    monkeypatch.setattr(settings, "default_exchange", "paper")


async def _all(session_maker, model):
    async with session_maker() as db:
        result = await db.execute(select(model).order_by(model.id))
        return list(result.scalars().all())


class TestReceiveAlert:
    async def test_alert_text_opens_position(self, client, session_maker, paper_config):
        resp = await client.post("/api/webhook/paper", json={"alertText": "LONG Entry Symbol: BTCUSD Price: 45000"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["actions"] == ["OPEN_LONG"]
        assert data["order"]["avgPrice"] == 45000.0
        rows = await _all(session_maker, PositionRecord)
        assert [(r.symbol, r.side, r.status) for r in rows] == [("BTCUSD", "LONG", "open")]

    async def test_default_exchange_route(self, client, paper_config):
        resp = await client.post("/api/webhook", json={"symbol": "ETHUSD", "action": "SELL"})

        assert resp.status_code == 200
        assert resp.json()["actions"] == ["OPEN_SHORT"]

    async def test_plain_text_body(self, client, paper_config):
        resp = await client.post(
            "/api/webhook/paper",
            content=b"SHORT Entry Symbol: ETHUSD",
            headers={"Content-Type": "text/plain"},
        )

        assert resp.status_code == 200
        assert resp.json()["actions"] == ["OPEN_SHORT"]

    async def test_unparseable_alert_is_rejected_and_audited(self, client, session_maker, paper_exchange, paper_config):
        resp = await client.post("/api/webhook/paper", json={"alertText": "buy the dip"})

        assert resp.status_code == 400
        assert "error" in resp.json()
        assert paper_exchange.calls == []
        logs = await _all(session_maker, DirectiveLog)
        assert [log.status for log in logs] == ["rejected"]

    async def test_empty_body(self, client, paper_config):
        resp = await client.post("/api/webhook/paper", content=b"")
        assert resp.status_code == 400

    async def test_json_array_body(self, client, paper_config):
        resp = await client.post("/api/webhook/paper", json=[1, 2])
        assert resp.status_code == 400

    async def test_unknown_exchange(self, client, paper_config):
        resp = await client.post("/api/webhook/kraken", json={"symbol": "BTCUSD", "action": "BUY"})

        assert resp.status_code == 404
        assert "kraken" in resp.json()["error"]

    async def test_missing_exchange_config(self, client):
        resp = await client.post("/api/webhook/paper", json={"symbol": "BTCUSD", "action": "BUY"})
        assert resp.status_code == 404

    async def test_upstream_failure_is_500(self, client, paper_exchange, paper_config):
        paper_exchange.fail_on["place_order"] = UpstreamError("insufficient margin", venue="paper")

        resp = await client.post("/api/webhook/paper", json={"symbol": "BTCUSD", "action": "BUY"})

        assert resp.status_code == 500
        body = resp.json()
        assert set(body) == {"error", "details"}
        assert "insufficient margin" in body["details"]["upstream"]

    async def test_ledger_read_failure_is_json_500(self, client, session_maker, paper_exchange, paper_config, monkeypatch):
        original_execute = AsyncSession.execute

        async def execute(self, statement, *args, **kwargs):
            if "position_records" in str(statement):
                raise OperationalError("SELECT", {}, Exception("disk I/O error"))
            return await original_execute(self, statement, *args, **kwargs)

        monkeypatch.setattr(AsyncSession, "execute", execute)

        resp = await client.post("/api/webhook/paper", json={"alertText": "LONG Entry Symbol: BTCUSD"})

        assert resp.status_code == 500
        body = resp.json()
        assert set(body) == {"error", "details"}
        assert "OperationalError" in body["error"]
        assert paper_exchange.call_count("place_order") == 0
        logs = await _all(session_maker, DirectiveLog)
        assert [log.status for log in logs] == ["failed"]


class TestWebhookSecret:
    @pytest.fixture(autouse=True)
    def secret(self, monkeypatch):
        monkeypatch.setattr(settings, "webhook_secret", "s3cret")

    async def test_missing_secret(self, client, paper_exchange, paper_config):
        resp = await client.post("/api/webhook/paper", json={"symbol": "BTCUSD", "action": "BUY"})

        assert resp.status_code == 401
        assert resp.json()["error"] == "Invalid webhook secret"
        assert paper_exchange.calls == []

    async def test_wrong_bearer(self, client, paper_config):
        resp = await client.post(
            "/api/webhook/paper",
            json={"symbol": "BTCUSD", "action": "BUY"},
            headers={"Authorization": "Bearer nope"},
        )
        assert resp.status_code == 401

    async def test_bearer_header(self, client, paper_config):
        resp = await client.post(
            "/api/webhook/paper",
            json={"symbol": "BTCUSD", "action": "BUY"},
            headers={"Authorization": "Bearer s3cret"},
        )
        assert resp.status_code == 200

    async def test_query_parameter(self, client, paper_config):
        resp = await client.post("/api/webhook/paper?secret=s3cret", json={"symbol": "BTCUSD", "action": "BUY"})
        assert resp.status_code == 200
