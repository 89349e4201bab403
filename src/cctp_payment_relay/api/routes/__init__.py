"""Route modules public API."""

from cctp_payment_relay.api.routes.health import router as health_router
from cctp_payment_relay.api.routes.operator import router as operator_router
from cctp_payment_relay.api.routes.relay import router as relay_router

__all__ = ["health_router", "operator_router", "relay_router"]
