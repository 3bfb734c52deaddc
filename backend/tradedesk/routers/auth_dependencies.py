"""
Shared-secret guards for machine-to-machine endpoints.

Alerts and scheduler calls carry no user session; each surface has its
own secret from settings. An empty secret disables the guard.
"""

import logging
import secrets
from typing import Optional

from fastapi import Depends, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tradedesk.config import settings
from tradedesk.exceptions import AuthError

logger = logging.getLogger(__name__)

# auto_error=False so a missing header reaches our own error shape
security = HTTPBearer(auto_error=False)


def _matches(expected: str, supplied: Optional[str]) -> bool:
    if not supplied:
        return False
    return secrets.compare_digest(expected.encode(), supplied.encode())


async def require_webhook_secret(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    secret: Optional[str] = Query(None),
):
    """
    Accept `Authorization: Bearer <WEBHOOK_SECRET>` or `?secret=<WEBHOOK_SECRET>`.

    TradingView cannot set headers, so the query form is the usual one.
    """
    expected = settings.webhook_secret
    if not expected:
        return
    supplied = credentials.credentials if credentials else secret
    if not _matches(expected, supplied):
        logger.warning("Rejected webhook call with missing or wrong secret")
        raise AuthError("Invalid webhook secret")


async def require_cron_secret(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)):
    """Accept `Authorization: Bearer <CRON_SECRET>`."""
    expected = settings.cron_secret
    if not expected:
        return
    if not _matches(expected, credentials.credentials if credentials else None):
        logger.warning("Rejected cron call with missing or wrong secret")
        raise AuthError("Unauthorized")
