"""
Domain exceptions for the application.

Services raise these instead of fastapi.HTTPException to avoid coupling
the service layer to the web framework. A global exception handler in
main.py translates them into HTTP responses.
"""

from typing import Any, List, Optional


class AppError(Exception):
    """Base application error with an HTTP-equivalent status code."""

    def __init__(self, message: str, status_code: int = 400, details: Any = None):
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(AppError):
    """Input validation failure (400)."""

    def __init__(self, message: str, details: Any = None):
        super().__init__(message, status_code=400, details=details)


class ParseError(AppError):
    """Directive text did not match the alert grammar (400).

    Carries the raw text so the rejection can be audited. The parser
    never guesses a side when this is raised.
    """

    def __init__(self, raw_text: str, reason: str = "Unrecognized directive"):
        self.raw_text = raw_text
        super().__init__(reason, status_code=400, details={"raw": raw_text})


class AuthError(AppError):
    """Invalid webhook/cron credential or unrefreshable broker token (401)."""

    def __init__(self, message: str = "Authentication failed", connection_id: Optional[int] = None):
        self.connection_id = connection_id
        super().__init__(message, status_code=401)


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class UpstreamError(AppError):
    """Exchange or broker call failed (502).

    `message` keeps the raw upstream text so callers can surface it.
    """

    def __init__(self, message: str, venue: str = "", code: Optional[int] = None):
        self.venue = venue
        self.code = code
        super().__init__(message, status_code=502)


class ExecutionError(AppError):
    """A multi-step action plan aborted part-way (500).

    `completed_steps` lists the steps that did reach the exchange and the
    ledger, so the caller knows what to verify before retrying.
    """

    def __init__(self, message: str, completed_steps: Optional[List[str]] = None, cause: Optional[Exception] = None):
        self.completed_steps = completed_steps or []
        self.cause = cause
        super().__init__(
            message,
            status_code=500,
            details={
                "completed_steps": self.completed_steps,
                "upstream": str(cause) if cause else None,
                "hint": "Verify exchange position state before retrying",
            },
        )


class PersistenceError(AppError):
    """Ledger read/write failure (500)."""

    def __init__(self, message: str):
        super().__init__(message, status_code=500)


class ReconciliationError(AppError):
    """Failure isolated to one position during a reconciliation pass.

    Collected into the pass result, never raised out of it.
    """

    def __init__(self, message: str, symbol: str = "", record_id: Optional[int] = None):
        self.symbol = symbol
        self.record_id = record_id
        super().__init__(message, status_code=500)

    def to_dict(self) -> dict:
        return {"symbol": self.symbol, "record_id": self.record_id, "error": self.message}
