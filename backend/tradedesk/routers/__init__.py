from tradedesk.routers import cron_router, webhook_router

__all__ = ["cron_router", "webhook_router"]
