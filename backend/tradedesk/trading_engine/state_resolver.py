"""
Position state resolution.

Maps (current side, desired side) to the minimal ordered list of exchange
steps. Deterministic and side-effect free; the current side is read from
the ledger by the caller.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from tradedesk.constants import Side

CLOSE = "CLOSE"
OPEN = "OPEN"


@dataclass(frozen=True)
class PlanStep:
    kind: str  # CLOSE or OPEN
    side: Optional[Side] = None  # Set for OPEN only

    @property
    def label(self) -> str:
        if self.kind == OPEN:
            return f"OPEN_{self.side.value}"
        return CLOSE


@dataclass
class ActionPlan:
    symbol: str
    current_side: Side
    desired_side: Side
    steps: List[PlanStep] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not self.steps

    @property
    def is_reversal(self) -> bool:
        return len(self.steps) == 2

    @property
    def labels(self) -> List[str]:
        """["CLOSE", "OPEN_SHORT"], or ["NO_ACTION"] for an empty plan."""
        if self.is_noop:
            return ["NO_ACTION"]
        return [step.label for step in self.steps]


def resolve_action_plan(current: Side, desired: Side, symbol: str) -> ActionPlan:
    """
    | current    | desired    | steps                 |
    |------------|------------|-----------------------|
    | X          | X          | []  (NO_ACTION)       |
    | FLAT       | LONG/SHORT | [OPEN(desired)]       |
    | LONG/SHORT | FLAT       | [CLOSE]               |
    | LONG       | SHORT      | [CLOSE, OPEN(SHORT)]  |
    | SHORT      | LONG       | [CLOSE, OPEN(LONG)]   |
    """
    current = Side(current)
    desired = Side(desired)
    plan = ActionPlan(symbol=symbol, current_side=current, desired_side=desired)

    if current == desired:
        return plan
    if current != Side.FLAT:
        plan.steps.append(PlanStep(CLOSE))
    if desired != Side.FLAT:
        plan.steps.append(PlanStep(OPEN, desired))
    return plan
