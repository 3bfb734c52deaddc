"""
Cron API Router

Scheduler-triggered reconciliation:
- POST /api/cron/reconcile/{connection_id}         - Reconcile one broker connection
- GET  /api/cron/sync-brokers                      - Reconcile all auto-sync connections
- POST /api/cron/reconcile-exchange/{exchange_id}  - Reconcile one execution exchange
- GET  /api/cron/sync-exchanges                    - Reconcile every active exchange
"""

import logging

from fastapi import APIRouter, Depends

from tradedesk.routers.auth_dependencies import require_cron_secret
from tradedesk.services.broker_reconciler import BrokerReconciler, broker_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


def get_broker_reconciler() -> BrokerReconciler:
    return broker_reconciler


@router.post("/reconcile/{connection_id}")
async def reconcile_connection(connection_id: int, reconciler: BrokerReconciler = Depends(get_broker_reconciler)):
    """Reconcile one broker connection's ledger rows against the broker."""
    result = await reconciler.run_reconciliation(connection_id)
    return {"success": result["failed"] == 0, **result}


@router.get("/sync-brokers")
async def sync_brokers(reconciler: BrokerReconciler = Depends(get_broker_reconciler)):
    """Reconcile every valid connection with auto-sync enabled."""
    summary = await reconciler.run_auto_sync()
    if not summary["connections"]:
        return {"message": "No active broker connections to sync", "synced": 0, **summary}
    logger.info(f"Broker sync: {summary['succeeded']} succeeded, {summary['failed']} failed")
    return {"message": "Broker sync complete", "synced": summary["succeeded"], **summary}


@router.post("/reconcile-exchange/{exchange_id}")
async def reconcile_exchange(exchange_id: str, reconciler: BrokerReconciler = Depends(get_broker_reconciler)):
    """Reconcile one exchange's ledger rows against the venue's positions."""
    result = await reconciler.run_exchange_reconciliation(exchange_id)
    return {"success": result["failed"] == 0, **result}


@router.get("/sync-exchanges")
async def sync_exchanges(reconciler: BrokerReconciler = Depends(get_broker_reconciler)):
    """Reconcile every exchange with an active config."""
    summary = await reconciler.run_exchange_sync()
    if not summary["exchanges"]:
        return {"message": "No active exchanges to sync", "synced": 0, **summary}
    logger.info(f"Exchange sync: {summary['succeeded']} succeeded, {summary['failed']} failed")
    return {"message": "Exchange sync complete", "synced": summary["succeeded"], **summary}
