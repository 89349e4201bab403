"""HTTP API layer."""

from cctp_payment_relay.api.router import api_router

__all__ = ["api_router"]
