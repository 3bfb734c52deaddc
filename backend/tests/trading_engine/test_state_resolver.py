"""Tests for backend/tradedesk/trading_engine/state_resolver.py"""

import pytest

from tradedesk.constants import Side
from tradedesk.trading_engine.state_resolver import CLOSE, OPEN, resolve_action_plan


class TestResolveActionPlan:
    """Every (current, desired) pair maps to the minimal step list."""

    @pytest.mark.parametrize("current,desired,labels", [
        (Side.FLAT, Side.FLAT, ["NO_ACTION"]),
        (Side.LONG, Side.LONG, ["NO_ACTION"]),
        (Side.SHORT, Side.SHORT, ["NO_ACTION"]),
        (Side.FLAT, Side.LONG, ["OPEN_LONG"]),
        (Side.FLAT, Side.SHORT, ["OPEN_SHORT"]),
        (Side.LONG, Side.FLAT, ["CLOSE"]),
        (Side.SHORT, Side.FLAT, ["CLOSE"]),
        (Side.LONG, Side.SHORT, ["CLOSE", "OPEN_SHORT"]),
        (Side.SHORT, Side.LONG, ["CLOSE", "OPEN_LONG"]),
    ])
    def test_table(self, current, desired, labels):
        plan = resolve_action_plan(current, desired, "BTCUSD")
        assert plan.labels == labels
        assert plan.symbol == "BTCUSD"

    def test_reversal_closes_before_opening(self):
        plan = resolve_action_plan(Side.LONG, Side.SHORT, "BTCUSD")
        assert plan.is_reversal
        assert [step.kind for step in plan.steps] == [CLOSE, OPEN]
        assert plan.steps[1].side == Side.SHORT

    def test_noop_plan(self):
        plan = resolve_action_plan(Side.LONG, Side.LONG, "BTCUSD")
        assert plan.is_noop
        assert not plan.is_reversal
        assert plan.steps == []

    def test_accepts_string_sides(self):
        plan = resolve_action_plan("FLAT", "SHORT", "ETHUSD")
        assert plan.current_side == Side.FLAT
        assert plan.labels == ["OPEN_SHORT"]
