import logging

from fastapi import FastAPI

from settlement.api.router import api_router
from settlement.config import settings
from settlement.core.errors import SettlementError
from settlement.core.observability import (
    global_exception_handler,
    request_logging_middleware,
    settlement_error_handler,
)
from settlement.database import POOL_CONFIG
from settlement.services.scheduler import runner as daily_runner

api_prefix = settings.api_prefix

logger = logging.getLogger("settlement")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(
    title=settings.app_name,
    docs_url="/docs" if settings.enable_docs else None,
    redoc_url="/redoc" if settings.enable_docs else None,
    openapi_url=(f"{api_prefix}/openapi.json" if api_prefix else "/openapi.json")
    if settings.enable_docs
    else None,
)

# Expose logger for middleware without creating circular imports.
app.state.logger = logger

app.add_exception_handler(SettlementError, settlement_error_handler)
app.add_exception_handler(Exception, global_exception_handler)

# Request-level logging + request correlation id.
app.middleware("http")(request_logging_middleware)

app.include_router(api_router, prefix=api_prefix)


@app.on_event("startup")
def _startup_scheduler():
    logger.info(
        "runtime_config",
        extra={"environment": settings.environment, "db_pool": POOL_CONFIG},
    )
    # Avoid running background threads in test context.
    if (settings.environment or "").lower() == "test":
        return
    if not settings.scheduler_enabled:
        return
    daily_runner.start()
    logger.info("scheduler_started", extra={"daily_utc_hour": daily_runner.hour_utc})


@app.on_event("shutdown")
def _shutdown_scheduler():
    daily_runner.stop()
    logger.info("scheduler_stopped")
