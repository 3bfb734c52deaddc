"""
Alert text tokenizer.

Splits TradingView alert text such as

    "Momentum LONG Exit (MA Cross)! Symbol: BTCUSD, Price: 44800"

into typed tokens for the parser. Field labels ("Symbol:", "Price:") are
emitted together with their value so the parser never has to glue
label and value back together.
"""

import re
from dataclasses import dataclass
from typing import List

from tradedesk.exceptions import ParseError

# Order matters: the first alternative that matches at a position wins.
_TOKEN_SPEC = [
    ("SYMBOL", r"Symbol\s*:\s*(?P<symbol_value>[A-Za-z0-9._/\-]+)"),
    ("PRICE", r"Price\s*:\s*(?P<price_value>[0-9]+(?:\.[0-9]+)?)"),
    ("DIRECTION", r"\b(?:LONG|SHORT)\b"),
    ("PHASE", r"\b(?:Entry|Exit)\b"),
    ("REASON", r"\((?P<reason_value>[^()]*)\)"),
    ("BANG", r"!"),
    ("COMMA", r","),
    ("WORD", r"[^\s,!()]+"),
    ("WS", r"\s+"),
    ("MISMATCH", r"."),
]

_MASTER_PATTERN = re.compile(
    "|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC),
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    value: str
    position: int


def tokenize(text: str) -> List[Token]:
    """
    Turn alert text into a token list (whitespace dropped).

    DIRECTION and PHASE values are upper-cased; SYMBOL, PRICE and REASON
    carry just the field value.

    Raises:
        ParseError: on a character no token accepts
    """
    tokens: List[Token] = []
    for match in _MASTER_PATTERN.finditer(text):
        kind = match.lastgroup
        raw = match.group()
        if kind == "WS":
            continue
        if kind == "MISMATCH":
            raise ParseError(text, f"Unexpected character {raw!r} at position {match.start()}")

        if kind == "SYMBOL":
            value = match.group("symbol_value")
        elif kind == "PRICE":
            value = match.group("price_value")
        elif kind == "REASON":
            value = match.group("reason_value").strip()
        elif kind in ("DIRECTION", "PHASE"):
            value = raw.upper()
        else:
            value = raw
        tokens.append(Token(kind=kind, text=raw, value=value, position=match.start()))
    return tokens
