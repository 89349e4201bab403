"""Health check routes."""

from fastapi import APIRouter, Depends

from cctp_payment_relay.api.dependencies import get_relay_service
from cctp_payment_relay.application.services import RelayService
from cctp_payment_relay.domain.api_models import HealthResponse, RelayStatsResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(service: RelayService = Depends(get_relay_service)) -> HealthResponse:
    """Liveness check with relay counters."""

    return service.health()


@router.get("/stats", response_model=RelayStatsResponse, response_model_exclude_none=True)
async def stats(service: RelayService = Depends(get_relay_service)) -> RelayStatsResponse:
    """In-flight relays and recent completions."""

    return service.stats()


__all__ = ["router"]
