"""Pydantic models for the HTTP status and trigger surface."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from cctp_payment_relay.domain.entities import RecoveryLogEvent, TransferRecord
from cctp_payment_relay.domain.transfer_types import (
    ProcessingStatus,
    TransferOperation,
    TransferStatus,
)


class RelayModel(BaseModel):
    """Base model for relay API payloads."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StartJobRequest(RelayModel):
    """Relay the escrow burn of a job start."""

    job_id: str = Field(alias="jobId", min_length=1)
    tx_hash: str = Field(alias="txHash", min_length=1)


class ReleasePaymentRequest(RelayModel):
    """Relay a payment release triggered on the job's chain."""

    job_id: str = Field(alias="jobId", min_length=1)
    source_tx_hash: str = Field(alias="sourceTxHash", min_length=1)


class LockMilestoneRequest(RelayModel):
    """Relay the escrow burn of one milestone lock."""

    job_id: str = Field(alias="jobId", min_length=1)
    tx_hash: str = Field(alias="txHash", min_length=1)


class SettleDisputeRequest(RelayModel):
    """Relay a dispute settlement burned on the native chain."""

    job_id: str = Field(alias="jobId", min_length=1)
    tx_hash: str = Field(alias="txHash", min_length=1)
    dispute_id: str | None = Field(default=None, alias="disputeId")


class RelayTriggerResponse(RelayModel):
    """Acknowledgement of a trigger request."""

    success: bool = True
    status: ProcessingStatus
    job_id: str = Field(alias="jobId")
    status_key: str = Field(alias="statusKey")


class TransferStatusResponse(RelayModel):
    """Status of one transfer."""

    status_key: str = Field(alias="statusKey")
    operation: TransferOperation
    job_id: str = Field(alias="jobId")
    status: TransferStatus
    step: str
    from_database: bool = Field(alias="fromDatabase")
    source_tx_hash: str = Field(alias="sourceTxHash")
    source_chain: str = Field(alias="sourceChain")
    destination_chain: str = Field(alias="destinationChain")
    attempt: int
    burn_tx_hash: str | None = Field(default=None, alias="burnTxHash")
    completion_tx_hash: str | None = Field(default=None, alias="completionTxHash")
    last_error: str | None = Field(default=None, alias="lastError")
    dispute_id: str | None = Field(default=None, alias="disputeId")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    @classmethod
    def from_record(cls, record: TransferRecord, *, from_database: bool) -> TransferStatusResponse:
        return cls(
            status_key=record.status_key,
            operation=record.operation,
            job_id=record.job_id,
            status=record.status,
            step=record.step,
            from_database=from_database,
            source_tx_hash=record.source_tx_hash,
            source_chain=record.source_chain,
            destination_chain=record.destination_chain,
            attempt=record.attempt,
            burn_tx_hash=record.burn_tx_hash,
            completion_tx_hash=record.completion_tx_hash,
            last_error=record.last_error,
            dispute_id=record.dispute_id,
            created_at=record.created_at,
            updated_at=record.updated_at,
            completed_at=record.completed_at,
        )


class CctpStatusResponse(RelayModel):
    """Generic status lookup that never returns 404."""

    found: bool
    status: TransferStatus | None = None
    step: str | None = None
    status_key: str | None = Field(default=None, alias="statusKey")
    completion_tx_hash: str | None = Field(default=None, alias="completionTxHash")
    last_error: str | None = Field(default=None, alias="lastError")
    from_database: bool | None = Field(default=None, alias="fromDatabase")


class RecoveryLogEntryResponse(RelayModel):
    """One pending or failed event from the flat recovery log."""

    job_id: str = Field(alias="jobId")
    event: str
    tx_hash: str = Field(alias="txHash")
    status: str
    timestamp: str
    chain: str | None = None
    completion_tx_hash: str | None = Field(default=None, alias="completionTxHash")
    error: str | None = None

    @classmethod
    def from_event(cls, event: RecoveryLogEvent) -> RecoveryLogEntryResponse:
        return cls(
            job_id=event.job_id,
            event=event.event,
            tx_hash=event.tx_hash,
            status=event.status,
            timestamp=event.timestamp,
            chain=event.chain,
            completion_tx_hash=event.completion_tx_hash,
            error=event.error,
        )


class PaymentLogResponse(RelayModel):
    """Operator recovery view."""

    transfers: list[TransferStatusResponse] = Field(default_factory=list)
    recovery_log: list[RecoveryLogEntryResponse] = Field(
        default_factory=list, alias="recoveryLog"
    )


class ListenerControlResponse(RelayModel):
    """Result of starting or stopping the release listener."""

    success: bool = True
    message: str


class RecentCompletionResponse(RelayModel):
    """One relay finished by this process."""

    status_key: str = Field(alias="statusKey")
    operation: TransferOperation
    job_id: str = Field(alias="jobId")
    completion_tx_hash: str | None = Field(default=None, alias="completionTxHash")
    completed_at: datetime | None = Field(default=None, alias="completedAt")

    @classmethod
    def from_record(cls, record: TransferRecord) -> RecentCompletionResponse:
        return cls(
            status_key=record.status_key,
            operation=record.operation,
            job_id=record.job_id,
            completion_tx_hash=record.completion_tx_hash,
            completed_at=record.completed_at,
        )


class RelayStatsResponse(RelayModel):
    """In-flight relays and the latest completions."""

    processing_jobs: list[str] = Field(default_factory=list, alias="processingJobs")
    recent_completions: list[RecentCompletionResponse] = Field(
        default_factory=list, alias="recentCompletions"
    )
    event_listener_active: bool = Field(alias="eventListenerActive")
    native_chain: str = Field(alias="nativeChain")
    job_contract_address: str | None = Field(default=None, alias="jobContractAddress")


class HealthResponse(RelayModel):
    """Liveness payload with relay counters."""

    status: str = "running"
    uptime_seconds: float = Field(alias="uptimeSeconds")
    processing_jobs: int = Field(alias="processingJobs")
    completed_jobs: int = Field(alias="completedJobs")
    event_listener_active: bool = Field(alias="eventListenerActive")
    timestamp: datetime


__all__ = [
    "CctpStatusResponse",
    "HealthResponse",
    "ListenerControlResponse",
    "LockMilestoneRequest",
    "PaymentLogResponse",
    "RecentCompletionResponse",
    "RecoveryLogEntryResponse",
    "RelayModel",
    "RelayStatsResponse",
    "RelayTriggerResponse",
    "ReleasePaymentRequest",
    "SettleDisputeRequest",
    "StartJobRequest",
    "TransferStatusResponse",
]
