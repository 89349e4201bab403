"""Top-level API router composition."""

from fastapi import APIRouter

from cctp_payment_relay.api.routes import health_router, operator_router, relay_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(relay_router)
api_router.include_router(operator_router)

__all__ = ["api_router"]
