"""
Directives Package

Parses inbound alerts (TradingView text or structured payloads) into
TradeDirective objects.
"""

from tradedesk.directives.parser import (
    TradeDirective,
    normalize_reason,
    parse_alert_text,
    parse_directive,
    parse_structured,
)

__all__ = [
    "TradeDirective",
    "normalize_reason",
    "parse_alert_text",
    "parse_directive",
    "parse_structured",
]
