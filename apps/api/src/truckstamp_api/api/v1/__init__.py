from fastapi import APIRouter

from .endpoints import (
    billing,
    billing_webhooks,
    checkins,
    health,
    loyalty,
)


api_router = APIRouter()
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(checkins.router)
api_router.include_router(loyalty.router)
api_router.include_router(billing.router)
api_router.include_router(billing_webhooks.router)
