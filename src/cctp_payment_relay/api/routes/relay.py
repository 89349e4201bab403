"""Relay trigger and status routes."""

from __future__ import annotations

from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Path

from cctp_payment_relay.api.dependencies import get_relay_service
from cctp_payment_relay.application.services import RelayService
from cctp_payment_relay.domain.api_models import (
    LockMilestoneRequest,
    RelayTriggerResponse,
    ReleasePaymentRequest,
    SettleDisputeRequest,
    StartJobRequest,
    TransferStatusResponse,
)
from cctp_payment_relay.domain.errors import (
    PersistenceReadError,
    TransferNotFoundError,
    TransferValidationError,
)

router = APIRouter(prefix="/api", tags=["relay"])


def _raise_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, TransferNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransferValidationError):
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PersistenceReadError):
        raise HTTPException(status_code=503, detail=str(exc))
    raise HTTPException(status_code=500, detail="Unexpected relay error")


@router.post("/start-job", response_model=RelayTriggerResponse, status_code=200)
async def start_job(
    request: StartJobRequest,
    service: RelayService = Depends(get_relay_service),
) -> RelayTriggerResponse:
    """Relay the USDC burned when a job was started on its local chain."""

    try:
        return await service.start_job(request)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get(
    "/start-job-status/{job_id}",
    response_model=TransferStatusResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def get_start_job_status(
    job_id: str = Path(...),
    service: RelayService = Depends(get_relay_service),
) -> TransferStatusResponse:
    """Status of the start-job relay of a job."""

    try:
        return await service.get_start_job_status(job_id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/release-payment", response_model=RelayTriggerResponse, status_code=200)
async def release_payment(
    request: ReleasePaymentRequest,
    service: RelayService = Depends(get_relay_service),
) -> RelayTriggerResponse:
    """Relay a payment release; the burn is discovered on the native chain."""

    try:
        return await service.release_payment(request)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get(
    "/release-payment-status/{status_key}",
    response_model=TransferStatusResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def get_release_payment_status(
    status_key: str = Path(...),
    service: RelayService = Depends(get_relay_service),
) -> TransferStatusResponse:
    """Status by `jobId-sourceTxHash`."""

    try:
        return await service.get_release_payment_status(status_key)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/lock-milestone", response_model=RelayTriggerResponse, status_code=200)
async def lock_milestone(
    request: LockMilestoneRequest,
    service: RelayService = Depends(get_relay_service),
) -> RelayTriggerResponse:
    """Relay the USDC burned by one milestone lock."""

    try:
        return await service.lock_milestone(request)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get(
    "/lock-milestone-status/{status_key}",
    response_model=TransferStatusResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def get_lock_milestone_status(
    status_key: str = Path(...),
    service: RelayService = Depends(get_relay_service),
) -> TransferStatusResponse:
    """Status by `lock-jobId-txHash`."""

    try:
        return await service.get_lock_milestone_status(status_key)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/settle-dispute", response_model=RelayTriggerResponse, status_code=200)
async def settle_dispute(
    request: SettleDisputeRequest,
    service: RelayService = Depends(get_relay_service),
) -> RelayTriggerResponse:
    """Relay a dispute settlement from the native chain to the job's chain."""

    try:
        return await service.settle_dispute(request)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get(
    "/settle-dispute-status/{job_id}",
    response_model=TransferStatusResponse,
    response_model_exclude_none=True,
    status_code=200,
)
async def get_settle_dispute_status(
    job_id: str = Path(...),
    service: RelayService = Depends(get_relay_service),
) -> TransferStatusResponse:
    try:
        return await service.get_settle_dispute_status(job_id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


__all__ = ["router"]
