import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select

from tradedesk.config import settings
from tradedesk.constants import INTENT_CLOSE_CONFIRMED, INTENT_PENDING
from tradedesk.database import async_session_maker, init_db
from tradedesk.exceptions import AppError
from tradedesk.exchange_clients.factory import clear_exchange_client_cache, get_exchange_client
from tradedesk.models import TradeIntent
from tradedesk.routers import cron_router, webhook_router
from tradedesk.trading_engine.order_executor import resume_pending_intents

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="TradeDesk Signal Execution")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook_router.router)  # TradingView / structured alerts
app.include_router(cron_router.router)  # Scheduler-triggered reconciliation


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "details": exc.details})


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


async def resume_interrupted_reversals():
    """Resume reversal intents left between their CLOSE and OPEN legs by a restart."""
    async with async_session_maker() as db:
        result = await db.execute(
            select(TradeIntent.exchange_id)
            .where(TradeIntent.status.in_([INTENT_PENDING, INTENT_CLOSE_CONFIRMED]))
            .distinct()
        )
        exchange_ids = [row[0] for row in result.all()]

        for exchange_id in exchange_ids:
            try:
                counts = await resume_pending_intents(db, get_exchange_client(exchange_id), exchange_id)
            except AppError as e:
                logger.error(f"Could not resume reversal intents for {exchange_id}: {e.message}")
                continue
            logger.info(f"Reversal intents for {exchange_id}: {counts}")


# Startup/Shutdown events
@app.on_event("startup")
async def startup_event():
    logger.info("Initializing database...")
    await init_db()
    await resume_interrupted_reversals()
    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event():
    clear_exchange_client_cache()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
