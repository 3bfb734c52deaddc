"""
Order execution for resolved action plans.

Runs CLOSE/OPEN steps against an ExchangeClient and records each confirmed
step in the signal ledger. Callers hold the symbol lock for the whole plan.

Rules:
- No ledger write happens before the exchange has confirmed the step
- A reversal's OPEN is only sent after the CLOSE is confirmed flat
- Order placement and closes are never retried blindly; the venue's
  position is checked first so a replay adopts instead of re-ordering
- Reversals are tracked with a persisted TradeIntent so a crash between
  the two legs can be resumed
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.config import settings
from tradedesk.constants import (
    EXIT_DIRECT_SIGNAL,
    EXIT_SIGNAL_REVERSAL,
    INTENT_CLOSE_CONFIRMED,
    INTENT_COMPLETED,
    INTENT_EXPIRED,
    INTENT_FAILED,
    INTENT_PENDING,
    Side,
)
from tradedesk.exceptions import (
    ExecutionError,
    NotFoundError,
    PersistenceError,
    UpstreamError,
    ValidationError,
)
from tradedesk.exchange_clients.base import ExchangeClient
from tradedesk.models import ExchangeConfig, PositionRecord, TradeIntent
from tradedesk.trading_engine.signal_ledger import SignalLedger, run_statement
from tradedesk.trading_engine.state_resolver import CLOSE, ActionPlan, resolve_action_plan
from tradedesk.trading_engine.symbol_locks import get_symbol_lock
from tradedesk.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

# Errors that abort a plan and surface as ExecutionError
_UPSTREAM_ERRORS = (UpstreamError, ConnectionError, asyncio.TimeoutError)


@dataclass
class ExecutionResult:
    """Outcome of one executed plan."""
    plan: ActionPlan
    completed_steps: List[str] = field(default_factory=list)
    order: Optional[Dict[str, Any]] = None
    closed_record: Optional[PositionRecord] = None
    opened_record: Optional[PositionRecord] = None

    @property
    def pnl_percentage(self) -> Optional[float]:
        if self.closed_record is None:
            return None
        return self.closed_record.pnl_percentage


async def load_exchange_config(db: AsyncSession, exchange_id: str) -> ExchangeConfig:
    """
    Get the sizing config for an exchange.

    The most recently updated active row wins when several share a name.

    Raises:
        NotFoundError: no config row for the exchange
        ValidationError: config exists but is inactive
    """
    result = await run_statement(
        db,
        select(ExchangeConfig)
        .where(ExchangeConfig.name == exchange_id)
        .order_by(desc(ExchangeConfig.updated_at), desc(ExchangeConfig.id)),
        "config read",
    )
    configs = list(result.scalars().all())
    if not configs:
        raise NotFoundError(f"No exchange config for '{exchange_id}'")

    for config in configs:
        if config.is_active:
            return config
    raise ValidationError(f"Exchange '{exchange_id}' is not active")


class OrderExecutor:
    """
    Executes ActionPlans for one exchange.

    Args:
        db: Session used for ledger and intent writes
        exchange: Venue client
        exchange_id: Ledger key for rows written by this executor
        sizing_percentage: Percent of current equity per OPEN
    """

    def __init__(
        self,
        db: AsyncSession,
        exchange: ExchangeClient,
        exchange_id: str,
        sizing_percentage: float,
    ):
        self.db = db
        self.exchange = exchange
        self.exchange_id = exchange_id
        self.sizing_percentage = sizing_percentage
        self.ledger = SignalLedger(db)

    async def execute(
        self,
        plan: ActionPlan,
        price_hint: Optional[float] = None,
        reason_tag: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run every step of the plan in order.

        Raises:
            ExecutionError: an exchange call failed; remaining steps were skipped
            PersistenceError: the exchange confirmed a step but the ledger write failed
        """
        result = ExecutionResult(plan=plan)
        if plan.is_noop:
            logger.info(f"{self.exchange_id}:{plan.symbol} already {plan.current_side.value}, no action")
            return result

        intent = None
        if plan.is_reversal:
            intent = await self._create_intent(plan, reason_tag)

        try:
            for step in plan.steps:
                if step.kind == CLOSE:
                    exit_reason = EXIT_SIGNAL_REVERSAL if plan.is_reversal else (reason_tag or EXIT_DIRECT_SIGNAL)
                    result.closed_record = await self._execute_close(plan.symbol, price_hint, exit_reason)
                    result.completed_steps.append(step.label)
                    if intent is not None:
                        await self._set_intent_status(intent, INTENT_CLOSE_CONFIRMED)
                else:
                    result.opened_record, result.order = await self._execute_open(
                        plan.symbol, step.side, price_hint, reason_tag
                    )
                    result.completed_steps.append(step.label)
        except ExecutionError as e:
            if intent is not None:
                await self._set_intent_status(intent, INTENT_FAILED, error=e.message)
            raise ExecutionError(e.message, completed_steps=list(result.completed_steps), cause=e.cause)
        except PersistenceError as e:
            if intent is not None:
                await self._set_intent_status(intent, INTENT_FAILED, error=e.message)
            raise
        except _UPSTREAM_ERRORS as e:
            if intent is not None:
                await self._set_intent_status(intent, INTENT_FAILED, error=str(e))
            failed_step = plan.steps[len(result.completed_steps)].label
            logger.error(
                f"{failed_step} failed for {self.exchange_id}:{plan.symbol} after "
                f"{result.completed_steps or 'no steps'}: {e}"
            )
            raise ExecutionError(
                f"{failed_step} failed for {plan.symbol}: {e}",
                completed_steps=list(result.completed_steps),
                cause=e,
            )

        if intent is not None:
            await self._set_intent_status(intent, INTENT_COMPLETED)
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _execute_close(
        self, symbol: str, price_hint: Optional[float], exit_reason: str
    ) -> Optional[PositionRecord]:
        position = await self.exchange.get_position(symbol)

        if position["side"] == Side.FLAT.value:
            logger.warning(
                f"{self.exchange_id}:{symbol} already flat on the exchange; closing ledger row only"
            )
            exit_price = price_hint
        else:
            response = await self.exchange.close_position(symbol)
            if not response.get("closed"):
                await self._confirm_flat(symbol)
            exit_price = response.get("exit_price") or price_hint

        return await self.ledger.close_position(
            symbol, self.exchange_id, exit_price=exit_price, exit_time=utcnow(), exit_reason=exit_reason
        )

    async def _confirm_flat(self, symbol: str):
        """Poll the venue until the position reads zero size."""
        attempts = settings.close_confirm_attempts
        for attempt in range(attempts):
            position = await self.exchange.get_position(symbol)
            if position["side"] == Side.FLAT.value or not position.get("size"):
                logger.info(f"Close of {self.exchange_id}:{symbol} confirmed on poll {attempt + 1}")
                return
            if attempt < attempts - 1:
                await asyncio.sleep(settings.close_confirm_interval_seconds)

        raise UpstreamError(
            f"Close of {symbol} not confirmed after {attempts} position checks",
            venue=self.exchange_id,
        )

    async def _execute_open(
        self,
        symbol: str,
        side: Side,
        price_hint: Optional[float],
        reason_tag: Optional[str],
    ):
        position = await self.exchange.get_position(symbol)

        if position["side"] == side.value:
            # A previous attempt filled but never reached the ledger
            logger.warning(
                f"{self.exchange_id}:{symbol} already {side.value} on the exchange; "
                f"adopting position instead of placing a new order"
            )
            order = {
                "order_id": None,
                "avg_price": position.get("avg_price"),
                "size": position.get("size"),
                "adopted": True,
            }
        elif position["side"] != Side.FLAT.value:
            raise ExecutionError(
                f"Refusing to open {side.value} {symbol}: exchange still holds {position['side']}",
                completed_steps=[],
            )
        else:
            equity = await self.exchange.get_account_equity()
            notional = self.sizing_percentage / 100.0 * equity
            if notional <= 0:
                raise ExecutionError(
                    f"Cannot size {side.value} {symbol}: equity {equity} x {self.sizing_percentage}%",
                    completed_steps=[],
                )
            logger.info(
                f"Opening {side.value} {self.exchange_id}:{symbol} notional={notional:.2f} "
                f"({self.sizing_percentage}% of {equity:.2f})"
            )
            order = await self.exchange.place_order(symbol, side.value, notional)

        entry_price = order.get("avg_price") or price_hint
        record = await self.ledger.open_position(
            symbol,
            self.exchange_id,
            side,
            entry_price=entry_price,
            entry_time=utcnow(),
            quantity=order.get("size"),
            entry_reason=reason_tag,
        )
        return record, order

    # ------------------------------------------------------------------
    # Reversal intents
    # ------------------------------------------------------------------

    async def _create_intent(self, plan: ActionPlan, reason_tag: Optional[str]) -> TradeIntent:
        intent = TradeIntent(
            symbol=plan.symbol,
            exchange_id=self.exchange_id,
            from_side=plan.current_side.value,
            to_side=plan.desired_side.value,
            status=INTENT_PENDING,
            reason_tag=reason_tag,
        )
        self.db.add(intent)
        await self.ledger.commit("intent")
        return intent

    async def _set_intent_status(self, intent: TradeIntent, status: str, error: Optional[str] = None):
        intent.status = status
        intent.updated_at = utcnow()
        if error:
            intent.error = error[:1000]
        try:
            await self.ledger.commit("intent update")
        except PersistenceError as e:
            # Intent rows are bookkeeping; the exchange/ledger outcome stands
            logger.error(f"Failed to mark reversal intent {status}: {e}")


async def resume_pending_intents(
    db: AsyncSession,
    exchange: ExchangeClient,
    exchange_id: str,
) -> Dict[str, int]:
    """
    Finish reversals interrupted between their CLOSE and OPEN legs.

    close_confirmed intents younger than INTENT_RESUME_WINDOW_SECONDS get
    their OPEN leg replayed (the open path adopts an existing exchange
    position instead of re-ordering). Older ones are expired. pending
    intents never confirmed their close, so they are marked failed and left
    to reconciliation.

    Returns counts {resumed, expired, failed}.
    """
    counts = {"resumed": 0, "expired": 0, "failed": 0}
    result = await run_statement(
        db,
        select(TradeIntent)
        .where(
            TradeIntent.exchange_id == exchange_id,
            TradeIntent.status.in_([INTENT_PENDING, INTENT_CLOSE_CONFIRMED]),
        )
        .order_by(TradeIntent.created_at),
        "intent read",
    )
    # Plain snapshots: a failed ledger commit rolls back and expires ORM objects
    snapshots = [
        (intent.id, intent.symbol, intent.status, intent.to_side, intent.reason_tag, intent.created_at)
        for intent in result.scalars().all()
    ]
    if not snapshots:
        return counts

    cutoff = utcnow() - timedelta(seconds=settings.intent_resume_window_seconds)
    config = None

    async def _finish(intent_id: int, status: str, error: Optional[str] = None):
        values = {"status": status, "updated_at": utcnow()}
        if error:
            values["error"] = error[:1000]
        statement = update(TradeIntent).where(TradeIntent.id == intent_id).values(**values)
        await run_statement(db, statement, "intent update")
        await SignalLedger(db).commit("intent update")

    for intent_id, symbol, status, to_side, reason_tag, created_at in snapshots:
        if status == INTENT_PENDING:
            await _finish(intent_id, INTENT_FAILED, "Interrupted before close was confirmed")
            counts["failed"] += 1
            logger.warning(f"Reversal intent {intent_id} for {exchange_id}:{symbol} never confirmed its close")
            continue

        if created_at is not None and created_at < cutoff:
            await _finish(intent_id, INTENT_EXPIRED)
            counts["expired"] += 1
            logger.warning(f"Reversal intent {intent_id} for {exchange_id}:{symbol} expired, not resuming")
            continue

        if config is None:
            config = await load_exchange_config(db, exchange_id)
        executor = OrderExecutor(db, exchange, exchange_id, config.position_sizing_percentage)
        target = Side(to_side)

        async with get_symbol_lock(exchange_id, symbol):
            current = await executor.ledger.current_side(symbol, exchange_id)
            if current != Side.FLAT and current != target:
                # Something else touched the symbol since the crash
                await _finish(intent_id, INTENT_FAILED, f"Ledger now {current.value}, not resuming")
                counts["failed"] += 1
                continue

            try:
                await executor.execute(resolve_action_plan(current, target, symbol), reason_tag=reason_tag)
            except (ExecutionError, PersistenceError) as e:
                await _finish(intent_id, INTENT_FAILED, e.message)
                counts["failed"] += 1
                logger.error(f"Resuming reversal intent {intent_id} failed: {e.message}")
                continue

            await _finish(intent_id, INTENT_COMPLETED)
            counts["resumed"] += 1
            logger.info(f"Resumed reversal intent {intent_id}: {exchange_id}:{symbol} -> {target.value}")

    return counts
