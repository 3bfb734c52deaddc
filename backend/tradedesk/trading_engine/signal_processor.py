"""
Directive processing and trade orchestration.

Coordinates one inbound directive end to end:
parse -> lock symbol -> resolve against the ledger -> execute -> audit log.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.constants import (
    DIRECTIVE_DUPLICATE,
    DIRECTIVE_FAILED,
    DIRECTIVE_PROCESSED,
    DIRECTIVE_REJECTED,
)
from tradedesk.directives.parser import TradeDirective
from tradedesk.exceptions import AppError
from tradedesk.exchange_clients.base import ExchangeClient
from tradedesk.models import DirectiveLog
from tradedesk.trading_engine.order_executor import ExecutionResult, OrderExecutor, load_exchange_config
from tradedesk.trading_engine.signal_ledger import SignalLedger, run_statement
from tradedesk.trading_engine.state_resolver import resolve_action_plan
from tradedesk.trading_engine.symbol_locks import get_symbol_lock

logger = logging.getLogger(__name__)


async def record_directive(
    db: AsyncSession,
    raw_source: str,
    status: str,
    exchange_id: Optional[str] = None,
    directive: Optional[TradeDirective] = None,
    actions: Optional[list] = None,
    error: Optional[str] = None,
    dedupe_key: Optional[str] = None,
):
    """Write a DirectiveLog row. Audit failures are logged, never raised."""
    entry = DirectiveLog(
        raw_source=raw_source[:4000],
        exchange_id=exchange_id,
        symbol=directive.symbol if directive else None,
        desired_side=directive.desired_side.value if directive else None,
        reason_tag=directive.reason_tag if directive else None,
        dedupe_key=dedupe_key,
        status=status,
        actions=actions or [],
        error=error[:2000] if error else None,
    )
    db.add(entry)
    try:
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Failed to write directive log ({status}): {e}")


async def _is_duplicate(db: AsyncSession, dedupe_key: str) -> bool:
    result = await run_statement(
        db,
        select(DirectiveLog.id)
        .where(
            DirectiveLog.dedupe_key == dedupe_key,
            DirectiveLog.status == DIRECTIVE_PROCESSED,
        )
        .limit(1),
        "dedupe read",
    )
    return result.first() is not None


def build_response(result: ExecutionResult, directive: TradeDirective) -> Dict[str, Any]:
    """Shape an execution result for the webhook caller."""
    plan = result.plan
    if plan.is_noop:
        message = f"{directive.symbol} already {plan.current_side.value}, no action taken"
    else:
        message = (
            f"{directive.symbol} {plan.current_side.value} -> {plan.desired_side.value}: "
            f"{', '.join(result.completed_steps)}"
        )

    response: Dict[str, Any] = {
        "success": True,
        "message": message,
        "actions": plan.labels,
    }
    if result.order is not None:
        response["order"] = {
            "orderId": result.order.get("order_id"),
            "avgPrice": result.order.get("avg_price"),
            "size": result.order.get("size"),
            "adopted": bool(result.order.get("adopted")),
        }
    if result.pnl_percentage is not None:
        response["pnlPercentage"] = round(result.pnl_percentage, 4)
    return response


async def process_directive(
    db: AsyncSession,
    directive: TradeDirective,
    exchange: ExchangeClient,
    exchange_id: str,
) -> Dict[str, Any]:
    """
    Execute one parsed directive on an exchange.

    Directives for the same (exchange_id, symbol) are serialized; the lock
    spans the ledger read, every exchange call and the ledger writes.

    Raises:
        NotFoundError / ValidationError: unusable exchange config (nothing executed)
        ExecutionError: an exchange step failed
        PersistenceError: the exchange confirmed a step but the ledger write failed
    """
    config = await load_exchange_config(db, exchange_id)
    # Ledger rows are filed under the venue's symbol so reconciliation can match them
    directive = replace(directive, symbol=exchange.ledger_symbol(directive.symbol))

    dedupe_key = f"{exchange_id}:{directive.dedupe_key}" if directive.dedupe_key else None

    async with get_symbol_lock(exchange_id, directive.symbol):
        if dedupe_key and await _is_duplicate(db, dedupe_key):
            logger.info(f"Duplicate directive {dedupe_key}, skipping")
            await record_directive(
                db, directive.raw_source, DIRECTIVE_DUPLICATE,
                exchange_id=exchange_id, directive=directive, actions=["NO_ACTION"],
            )
            return {
                "success": True,
                "message": f"Duplicate alert for {directive.symbol} ignored",
                "actions": ["NO_ACTION"],
                "duplicate": True,
            }

        try:
            current = await SignalLedger(db).current_side(directive.symbol, exchange_id)
            plan = resolve_action_plan(current, directive.desired_side, directive.symbol)
            logger.info(
                f"Directive {exchange_id}:{directive.symbol} {current.value} -> "
                f"{directive.desired_side.value}: {plan.labels}"
            )

            executor = OrderExecutor(db, exchange, exchange_id, config.position_sizing_percentage)
            result = await executor.execute(
                plan, price_hint=directive.price_hint, reason_tag=directive.reason_tag
            )
        except AppError as e:
            await record_directive(
                db, directive.raw_source, DIRECTIVE_FAILED,
                exchange_id=exchange_id, directive=directive,
                actions=getattr(e, "completed_steps", None), error=e.message,
            )
            raise

        await record_directive(
            db, directive.raw_source, DIRECTIVE_PROCESSED,
            exchange_id=exchange_id, directive=directive,
            actions=plan.labels, dedupe_key=dedupe_key,
        )

    return build_response(result, directive)


async def record_rejected(db: AsyncSession, raw_source: str, error: str, exchange_id: Optional[str] = None):
    """Audit an alert that failed parsing or validation."""
    logger.warning(f"Rejected directive for {exchange_id or 'default exchange'}: {error}")
    await record_directive(db, raw_source, DIRECTIVE_REJECTED, exchange_id=exchange_id, error=error)
