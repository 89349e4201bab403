"""Domain entities."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from cctp_payment_relay.domain.status_keys import status_key_for
from cctp_payment_relay.domain.transfer_types import (
    TransferOperation,
    TransferStatus,
    TransferStep,
)

TransferKey = tuple[TransferOperation, str]


def utc_now() -> datetime:
    """Timezone-aware current time."""

    return datetime.now(tz=UTC)


@dataclass(slots=True)
class TransferRecord:
    """Mutable state of one cross-chain transfer.

    `source_tx_hash` is the transaction that triggered the relay and, with
    `operation`, forms the natural key. `burn_tx_hash` is the transaction
    whose burn gets attested; it equals `source_tx_hash` unless the burn
    happens in a follow-up transaction discovered by event scanning.
    Attestation payloads are kept as 0x-prefixed hex strings.
    """

    operation: TransferOperation
    job_id: str
    source_tx_hash: str
    source_chain: str
    source_domain: int
    destination_chain: str
    destination_domain: int
    status: TransferStatus = TransferStatus.PENDING
    step: str = TransferStep.INITIATED.value
    dispute_id: str | None = None
    burn_tx_hash: str | None = None
    attestation_message: str | None = None
    attestation_signature: str | None = None
    recipient: str | None = None
    amount: int | None = None
    completion_tx_hash: str | None = None
    last_error: str | None = None
    attempt: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def natural_key(self) -> TransferKey:
        """Uniqueness key: one record per operation and source transaction."""

        return (self.operation, self.source_tx_hash)

    @property
    def status_key(self) -> str:
        """Caller-facing lookup key."""

        return status_key_for(self.operation, self.job_id, self.source_tx_hash)

    @property
    def has_attestation(self) -> bool:
        return bool(self.attestation_message) and bool(self.attestation_signature)

    def copy(self) -> TransferRecord:
        """Detached copy so callers never share cached instances."""

        return replace(self)


@dataclass(slots=True, frozen=True)
class StatusLookup:
    """Lookup result; `from_database` is set when the cache was cold."""

    record: TransferRecord
    from_database: bool


@dataclass(slots=True, frozen=True)
class ClaimResult:
    """Outcome of an atomic claim on a natural key."""

    record: TransferRecord
    claimed: bool


@dataclass(slots=True, frozen=True)
class RecoveryLogEvent:
    """One entry of the flat-file recovery log."""

    job_id: str
    event: str
    tx_hash: str
    status: str
    timestamp: str
    chain: str | None = None
    completion_tx_hash: str | None = None
    error: str | None = None


__all__ = [
    "ClaimResult",
    "RecoveryLogEvent",
    "StatusLookup",
    "TransferKey",
    "TransferRecord",
    "utc_now",
]
