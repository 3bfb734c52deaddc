"""
Directive Parser

Turns an inbound alert into a canonical TradeDirective. Two input forms:

1. TradingView alert text:
       [<strategy tag>] <LONG|SHORT> <Entry|Exit> [(<reason>)][!] Symbol: <SYMBOL>[,] [Price: <PRICE>]
2. Structured payload:
       {"symbol": ..., "action": "BUY"|"SELL"|"CLOSE", "price": ..., "positionAfter": -1|0|1}

Text that doesn't match the grammar raises ParseError; the parser never
guesses a side.
"""

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from tradedesk.constants import Side
from tradedesk.directives.tokenizer import Token, tokenize
from tradedesk.exceptions import ParseError, ValidationError
from tradedesk.utils.time_utils import parse_signal_time

logger = logging.getLogger(__name__)

_ACTION_SIDES = {
    "BUY": Side.LONG,
    "SELL": Side.SHORT,
    "CLOSE": Side.FLAT,
}

_POSITION_AFTER_SIDES = {
    -1: Side.SHORT,
    0: Side.FLAT,
    1: Side.LONG,
}


@dataclass
class TradeDirective:
    """Canonical trade intent for one symbol."""

    symbol: str
    desired_side: Side
    raw_source: str
    price_hint: Optional[float] = None
    reason_tag: Optional[str] = None
    strategy_tag: Optional[str] = None
    signal_time: Optional[datetime] = None

    @property
    def dedupe_key(self) -> Optional[str]:
        """symbol + bar-close time; None when the alert carried no time."""
        if self.signal_time is None:
            return None
        return f"{self.symbol}:{self.signal_time.isoformat()}"


def normalize_reason(reason: str) -> Optional[str]:
    """'MA Cross' -> 'ma_cross', 'Stop/Trailing' -> 'stop_trailing'."""
    tag = re.sub(r"[^a-z0-9]+", "_", reason.lower()).strip("_")
    return tag or None


def normalize_symbol(symbol: Any) -> str:
    if not isinstance(symbol, str) or not symbol.strip():
        raise ValidationError("Missing required field: symbol")
    return symbol.strip().upper()


def _parse_price(value: Any, field: str = "price") -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}: {value!r}")
    if price <= 0:
        raise ValidationError(f"Invalid {field}: must be positive")
    return price


class _AlertTextParser:
    """Recursive-descent parser over the token stream of one alert."""

    def __init__(self, text: str):
        self.text = text
        self.tokens: List[Token] = tokenize(text)
        self.pos = 0

    def _peek(self, offset: int = 0) -> Optional[Token]:
        index = self.pos + offset
        return self.tokens[index] if index < len(self.tokens) else None

    def _accept(self, kind: str) -> Optional[Token]:
        token = self._peek()
        if token is not None and token.kind == kind:
            self.pos += 1
            return token
        return None

    def _expect(self, kind: str, what: str) -> Token:
        token = self._accept(kind)
        if token is None:
            found = self._peek()
            where = f"found {found.text!r}" if found else "reached end of alert"
            raise ParseError(self.text, f"Expected {what}, {where}")
        return token

    def parse(self) -> TradeDirective:
        strategy_tag = self._strategy_tag()
        direction = self._expect("DIRECTION", "LONG or SHORT")
        phase = self._expect("PHASE", "Entry or Exit")

        reason_tag = None
        reason = self._accept("REASON")
        if reason is not None:
            reason_tag = normalize_reason(reason.value)

        self._accept("BANG")
        symbol = self._expect("SYMBOL", "'Symbol: <SYMBOL>'")
        self._accept("COMMA")

        price_hint = None
        price = self._accept("PRICE")
        if price is not None:
            price_hint = float(price.value)

        trailing = self._peek()
        if trailing is not None:
            raise ParseError(self.text, f"Unexpected {trailing.text!r} after alert fields")

        if phase.value == "EXIT":
            desired = Side.FLAT
        else:
            desired = Side(direction.value)

        return TradeDirective(
            symbol=normalize_symbol(symbol.value),
            desired_side=desired,
            raw_source=self.text,
            price_hint=price_hint,
            reason_tag=reason_tag,
            strategy_tag=strategy_tag,
        )

    def _strategy_tag(self) -> Optional[str]:
        """
        Consume leading tag words up to the first DIRECTION followed by PHASE.

        Direction words inside the tag ("Long Short Swing LONG Entry") stay
        part of the tag.
        """
        words = []
        while True:
            token = self._peek()
            if token is None:
                return " ".join(words) or None
            if token.kind == "DIRECTION":
                following = self._peek(1)
                if following is not None and following.kind == "PHASE":
                    return " ".join(words) or None
            elif token.kind != "WORD":
                return " ".join(words) or None
            words.append(token.text)
            self.pos += 1


def parse_alert_text(text: str) -> TradeDirective:
    """
    Parse TradingView alert text.

    Raises:
        ParseError: text doesn't follow the alert grammar
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError(text or "", "Empty alert text")
    directive = _AlertTextParser(text.strip()).parse()
    logger.debug(f"Parsed alert {text!r} -> {directive.symbol} {directive.desired_side.value}")
    return directive


def parse_structured(payload: Dict[str, Any]) -> TradeDirective:
    """
    Parse a structured order payload.

    positionAfter (-1/0/1) takes precedence over action when present.

    Raises:
        ValidationError: missing or invalid fields
    """
    symbol = normalize_symbol(payload.get("symbol"))

    position_after = payload.get("positionAfter", payload.get("position_after"))
    action = payload.get("action")

    if position_after is not None and position_after != "":
        try:
            position_after = int(position_after)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid positionAfter: {position_after!r}")
        if position_after not in _POSITION_AFTER_SIDES:
            raise ValidationError("positionAfter must be -1, 0 or 1")
        desired = _POSITION_AFTER_SIDES[position_after]
    elif action:
        if not isinstance(action, str) or action.strip().upper() not in _ACTION_SIDES:
            raise ValidationError(f"Invalid action: {action!r} (expected BUY, SELL or CLOSE)")
        desired = _ACTION_SIDES[action.strip().upper()]
    else:
        raise ValidationError("Missing required field: action or positionAfter")

    reason = payload.get("reason")
    return TradeDirective(
        symbol=symbol,
        desired_side=desired,
        raw_source=json.dumps(payload, default=str, sort_keys=True),
        price_hint=_parse_price(payload.get("price")),
        reason_tag=normalize_reason(reason) if isinstance(reason, str) else None,
        strategy_tag=payload.get("strategy"),
        signal_time=parse_signal_time(payload.get("timestamp", payload.get("time"))),
    )


def parse_directive(body: Dict[str, Any]) -> TradeDirective:
    """
    Parse any accepted webhook body into a TradeDirective.

    Accepted shapes:
        {"alertText": "..."} / {"alert_message": "..."}
        {"message": "<json of a structured payload>"}
        {"symbol": ..., "action": ..., ...}
    """
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")

    alert_text = body.get("alertText") or body.get("alert_message")
    if alert_text is not None:
        directive = parse_alert_text(alert_text)
        directive.signal_time = parse_signal_time(body.get("timestamp", body.get("time")))
        return directive

    message = body.get("message")
    if isinstance(message, str) and message.strip():
        try:
            inner = json.loads(message)
        except json.JSONDecodeError:
            # Plain-text message field carries alert text
            return parse_alert_text(message)
        if not isinstance(inner, dict):
            raise ValidationError("message must contain a JSON object")
        return parse_directive(inner)

    if "symbol" in body or "action" in body or "positionAfter" in body:
        return parse_structured(body)

    raise ValidationError("Missing alertText or symbol/action fields")
