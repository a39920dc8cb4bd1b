from fastapi import APIRouter

from settlement.api.routes import batches, health, obligations, payments, webhooks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(obligations.router)
api_router.include_router(batches.router)
api_router.include_router(payments.router)
api_router.include_router(webhooks.router)
