"""Caller-facing status keys and their parsing."""

from __future__ import annotations

from dataclasses import dataclass

from cctp_payment_relay.domain.errors import TransferNotFoundError
from cctp_payment_relay.domain.transfer_types import TransferOperation

_LOCK_PREFIX = "lock-"


@dataclass(slots=True, frozen=True)
class StatusKey:
    """Decoded status key; `source_tx_hash` is None for job-level keys."""

    operation: TransferOperation
    job_id: str
    source_tx_hash: str | None = None


def status_key_for(operation: TransferOperation, job_id: str, source_tx_hash: str) -> str:
    """Build the key callers use to poll one transfer.

    Release and lock keys embed the transaction hash so that repeated
    operations against one job are tracked independently.
    """

    if operation is TransferOperation.RELEASE_PAYMENT:
        return f"{job_id}-{source_tx_hash}"
    if operation is TransferOperation.LOCK_MILESTONE:
        return f"{_LOCK_PREFIX}{job_id}-{source_tx_hash}"
    return job_id


def parse_status_key(operation: TransferOperation, status_key: str) -> StatusKey:
    """Split a status key into job id and transaction hash.

    Job ids may contain dashes while transaction hashes never do, so the
    hash is always the last dash-separated segment.
    """

    key = status_key.strip()
    if not key:
        raise TransferNotFoundError("Status key cannot be empty.")

    if operation is TransferOperation.LOCK_MILESTONE:
        if not key.startswith(_LOCK_PREFIX):
            raise TransferNotFoundError(f"Lock status key '{status_key}' must start with 'lock-'.")
        key = key[len(_LOCK_PREFIX) :]
        job_id, separator, tx_hash = key.rpartition("-")
        if not separator or not job_id or not tx_hash:
            raise TransferNotFoundError(f"Malformed lock status key '{status_key}'.")
        return StatusKey(operation=operation, job_id=job_id, source_tx_hash=tx_hash)

    if operation is TransferOperation.RELEASE_PAYMENT:
        job_id, separator, tx_hash = key.rpartition("-")
        if separator and job_id and tx_hash:
            return StatusKey(operation=operation, job_id=job_id, source_tx_hash=tx_hash)

    return StatusKey(operation=operation, job_id=key)


__all__ = ["StatusKey", "parse_status_key", "status_key_for"]
