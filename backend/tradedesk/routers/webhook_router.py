"""
Webhook API Router

Inbound trade alerts:
- POST /api/webhook                  - Alert for the default exchange
- POST /api/webhook/{exchange_name}  - Alert for a named exchange

Bodies may be JSON ({alertText}, {alert_message}, {message}, or structured
{symbol, action, ...}) or raw alert text as sent by TradingView.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from tradedesk.config import settings
from tradedesk.database import get_db
from tradedesk.directives import parse_directive
from tradedesk.exceptions import AppError, ParseError, ValidationError
from tradedesk.exchange_clients.factory import get_exchange_client
from tradedesk.routers.auth_dependencies import require_webhook_secret
from tradedesk.trading_engine.signal_processor import process_directive, record_rejected

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhook", tags=["webhook"], dependencies=[Depends(require_webhook_secret)])


def _error_response(status_code: int, error: AppError) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error.message, "details": error.details})


def _decode_body(raw: bytes) -> Dict[str, Any]:
    text = raw.decode("utf-8", errors="replace").strip()
    if not text:
        raise ValidationError("Empty request body")
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        # Plain-text alert body
        return {"alertText": text}
    if isinstance(body, str):
        return {"alertText": body}
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object or alert text")
    return body


async def _handle_alert(request: Request, exchange_name: Optional[str], db: AsyncSession):
    exchange_id = (exchange_name or settings.default_exchange).lower()
    raw = await request.body()
    raw_source = raw.decode("utf-8", errors="replace")

    try:
        directive = parse_directive(_decode_body(raw))
    except (ParseError, ValidationError) as e:
        await record_rejected(db, raw_source, e.message, exchange_id)
        return _error_response(400, e)

    logger.info(
        f"Alert for {exchange_id}: {directive.symbol} -> {directive.desired_side.value} "
        f"(price={directive.price_hint}, reason={directive.reason_tag})"
    )

    try:
        exchange = get_exchange_client(exchange_id)
        return await process_directive(db, directive, exchange, exchange_id)
    except AppError as e:
        # Upstream failures (502 internally) are reported as 500
        status_code = e.status_code if e.status_code < 500 else 500
        if status_code >= 500:
            logger.error(f"Alert for {exchange_id}:{directive.symbol} failed: {e.message}")
        return _error_response(status_code, e)


@router.post("")
async def receive_alert(request: Request, db: AsyncSession = Depends(get_db)):
    """Execute an alert on the default exchange."""
    return await _handle_alert(request, None, db)


@router.post("/{exchange_name}")
async def receive_exchange_alert(exchange_name: str, request: Request, db: AsyncSession = Depends(get_db)):
    """Execute an alert on the named exchange."""
    return await _handle_alert(request, exchange_name, db)
