"""
Tests for backend/tradedesk/trading_engine/signal_processor.py

End-to-end directive handling against the paper venue: parse, resolve,
execute, ledger and audit log.
"""

import asyncio

import pytest
from sqlalchemy import select

from factories import add_exchange_config
from tradedesk.directives import parse_alert_text, parse_structured
from tradedesk.exceptions import ExecutionError, NotFoundError, UpstreamError, ValidationError
from tradedesk.models import DirectiveLog, PositionRecord
from tradedesk.trading_engine.signal_processor import process_directive, record_rejected


async def _rows(db, model):
    result = await db.execute(select(model).order_by(model.id))
    return list(result.scalars().all())


class TestScenarios:
    """Alert sequences as they arrive from TradingView."""

    async def test_long_entry_then_exit_reports_pnl(self, db_session, paper_exchange, paper_config):
        entry = await process_directive(
            db_session,
            parse_alert_text("LONG Entry Symbol: BTCUSD Price: 45000"),
            paper_exchange,
            "paper",
        )
        assert entry["success"] is True
        assert entry["actions"] == ["OPEN_LONG"]
        assert entry["order"]["avgPrice"] == 45000.0

        paper_exchange.set_mark_price("BTCUSD", 44800.0)
        exit_ = await process_directive(
            db_session,
            parse_alert_text("LONG Exit (MA Cross) Symbol: BTCUSD Price: 44800"),
            paper_exchange,
            "paper",
        )

        assert exit_["actions"] == ["CLOSE"]
        assert exit_["pnlPercentage"] == pytest.approx(-0.444, abs=1e-3)
        rows = await _rows(db_session, PositionRecord)
        assert len(rows) == 1
        assert rows[0].status == "closed"
        assert rows[0].exit_reason == "ma_cross"

    async def test_position_after_sequence(self, db_session, paper_exchange, paper_config):
        actions = []
        for position_after in [1, 1, -1]:
            directive = parse_structured({"symbol": "BTCUSD", "positionAfter": position_after})
            response = await process_directive(db_session, directive, paper_exchange, "paper")
            actions.append(response["actions"])

        assert actions == [["OPEN_LONG"], ["NO_ACTION"], ["CLOSE", "OPEN_SHORT"]]
        assert paper_exchange.call_count("place_order") == 2
        assert paper_exchange.call_count("close_position") == 1

    @pytest.mark.parametrize("sequence", [
        [1, 1, 1, 0, 0, 1],
        [1, -1, 1, -1],
        [0, -1, -1, 0, 1, 0, 0],
    ])
    async def test_opens_never_exceed_transitions_out_of_flat(self, db_session, paper_exchange, paper_config, sequence):
        sides = {1: "LONG", 0: "FLAT", -1: "SHORT"}
        transitions = 0
        previous = "FLAT"
        for position_after in sequence:
            desired = sides[position_after]
            if previous != desired and desired != "FLAT":
                transitions += 1
            previous = desired

            directive = parse_structured({"symbol": "BTCUSD", "positionAfter": position_after})
            await process_directive(db_session, directive, paper_exchange, "paper")

        assert paper_exchange.call_count("place_order") <= transitions

    async def test_flat_directive_with_nothing_open_is_noop(self, db_session, paper_exchange, paper_config):
        response = await process_directive(
            db_session, parse_alert_text("SHORT Exit! Symbol: BTCUSD"), paper_exchange, "paper"
        )

        assert response["actions"] == ["NO_ACTION"]
        assert await _rows(db_session, PositionRecord) == []
        assert paper_exchange.calls == []


class TestConcurrency:
    async def test_same_symbol_directives_are_serialized(self, file_session_maker, paper_exchange):
        async with file_session_maker() as db:
            await add_exchange_config(db)

        async def _send():
            async with file_session_maker() as db:
                directive = parse_structured({"symbol": "BTCUSD", "action": "BUY"})
                return await process_directive(db, directive, paper_exchange, "paper")

        responses = await asyncio.gather(*[_send() for _ in range(5)])

        assert sorted(r["actions"][0] for r in responses) == ["NO_ACTION"] * 4 + ["OPEN_LONG"]
        assert paper_exchange.call_count("place_order") == 1


class TestDedupe:
    async def test_repeated_alert_with_same_bar_time_is_ignored(self, db_session, paper_exchange, paper_config):
        payload = {"symbol": "BTCUSD", "action": "BUY", "timestamp": "2024-03-01T12:00:00Z"}
        await process_directive(db_session, parse_structured(payload), paper_exchange, "paper")

        # Position closed manually in between; a replayed alert must not reopen it
        await process_directive(
            db_session, parse_structured({"symbol": "BTCUSD", "action": "CLOSE"}), paper_exchange, "paper"
        )
        response = await process_directive(db_session, parse_structured(payload), paper_exchange, "paper")

        assert response["duplicate"] is True
        assert response["actions"] == ["NO_ACTION"]
        assert paper_exchange.call_count("place_order") == 1
        statuses = [log.status for log in await _rows(db_session, DirectiveLog)]
        assert statuses == ["processed", "processed", "duplicate"]


class TestFailures:
    async def test_missing_config_executes_nothing(self, db_session, paper_exchange):
        with pytest.raises(NotFoundError):
            await process_directive(
                db_session, parse_structured({"symbol": "BTCUSD", "action": "BUY"}), paper_exchange, "paper"
            )
        assert paper_exchange.calls == []

    async def test_inactive_config_executes_nothing(self, db_session, paper_exchange):
        await add_exchange_config(db_session, is_active=False)
        with pytest.raises(ValidationError):
            await process_directive(
                db_session, parse_structured({"symbol": "BTCUSD", "action": "BUY"}), paper_exchange, "paper"
            )
        assert paper_exchange.calls == []

    async def test_execution_failure_is_audited(self, db_session, paper_exchange, paper_config):
        paper_exchange.fail_on["place_order"] = UpstreamError("rejected by venue", venue="paper")

        with pytest.raises(ExecutionError):
            await process_directive(
                db_session, parse_structured({"symbol": "BTCUSD", "action": "SELL"}), paper_exchange, "paper"
            )

        logs = await _rows(db_session, DirectiveLog)
        assert logs[-1].status == "failed"
        assert "rejected by venue" in logs[-1].error

    async def test_record_rejected(self, db_session):
        await record_rejected(db_session, "buy the dip", "Expected LONG or SHORT", "paper")

        logs = await _rows(db_session, DirectiveLog)
        assert len(logs) == 1
        assert logs[0].status == "rejected"
        assert logs[0].raw_source == "buy the dip"
        assert logs[0].symbol is None
