"""Operator routes for status checks, manual recovery and the release listener."""

from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Path

from cctp_payment_relay.api.dependencies import get_relay_service
from cctp_payment_relay.application.services import RelayService
from cctp_payment_relay.domain.api_models import (
    CctpStatusResponse,
    ListenerControlResponse,
    PaymentLogResponse,
)
from cctp_payment_relay.domain.errors import (
    PersistenceReadError,
    RelayConfigurationError,
    TransferValidationError,
    TransientProviderError,
)

router = APIRouter(prefix="/api", tags=["operator"])


def _raise_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, TransferValidationError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (PersistenceReadError, RelayConfigurationError, TransientProviderError)):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=500, detail="Unexpected relay error")


@router.get(
    "/cctp-status/{operation}/{job_id}",
    response_model=CctpStatusResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def get_cctp_status(
    operation: str = Path(...),
    job_id: str = Path(...),
    service: RelayService = Depends(get_relay_service),
) -> CctpStatusResponse:
    """Status of any operation; unknown transfers answer `found: false`."""

    try:
        return await service.get_cctp_status(operation, job_id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get(
    "/payment-log",
    response_model=PaymentLogResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def get_payment_log(
    service: RelayService = Depends(get_relay_service),
) -> PaymentLogResponse:
    """Pending and failed transfers for manual completion."""

    try:
        return await service.payment_log()
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/start-listener", response_model=ListenerControlResponse, status_code=200)
async def start_listener(
    service: RelayService = Depends(get_relay_service),
) -> ListenerControlResponse:
    """Start following `PaymentReleased` on the native chain."""

    try:
        return await service.start_listener()
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/stop-listener", response_model=ListenerControlResponse, status_code=200)
async def stop_listener(
    service: RelayService = Depends(get_relay_service),
) -> ListenerControlResponse:
    """Stop the release listener."""

    try:
        return await service.stop_listener()
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


__all__ = ["router"]
