"""Ports for persistence, attestation, chain access and recovery logging."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from cctp_payment_relay.domain.attestation_models import Attestation
from cctp_payment_relay.domain.chain_models import ChainEvent, SubmissionReceipt
from cctp_payment_relay.domain.entities import (
    ClaimResult,
    RecoveryLogEvent,
    StatusLookup,
    TransferRecord,
)
from cctp_payment_relay.domain.transfer_types import TransferOperation, TransferStatus


class TransferRecordRepository(Protocol):
    """Durable persistence port for transfer records."""

    async def get(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
    ) -> TransferRecord | None:
        """Return a record by natural key."""

    async def get_latest_for_job(
        self,
        operation: TransferOperation,
        job_id: str,
    ) -> TransferRecord | None:
        """Return the most recently created record of one operation on a job."""

    async def list_by_status(
        self,
        statuses: Collection[TransferStatus],
    ) -> list[TransferRecord]:
        """Return records in any of the given statuses, oldest first."""

    async def claim(self, record: TransferRecord) -> ClaimResult:
        """Insert a pending record unless a non-failed one already exists.

        A failed record is restarted as a new pending attempt.
        """

    async def upsert(self, record: TransferRecord) -> TransferRecord:
        """Insert or update, ignoring status regressions; returns the stored row."""


@runtime_checkable
class ClosableRepository(Protocol):
    """Repository holding connections that must be released."""

    async def close(self) -> None:
        """Release pooled resources."""


class TransferStatusStore(Protocol):
    """Cached, durable store used by the relay components."""

    async def start(self) -> None:
        """Start background persistence retries."""

    async def stop(self) -> None:
        """Stop background work and flush what can be flushed."""

    async def claim(self, record: TransferRecord) -> ClaimResult:
        """Atomically claim a natural key for processing."""

    async def upsert(self, record: TransferRecord) -> TransferRecord:
        """Write through to the durable store, never regressing status."""

    async def get(self, operation: TransferOperation, job_id: str) -> StatusLookup:
        """Latest record for an operation on a job."""

    async def get_by_key(self, operation: TransferOperation, status_key: str) -> StatusLookup:
        """Record addressed by a caller-facing status key."""

    async def get_record(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
    ) -> TransferRecord:
        """Record addressed by natural key."""

    async def list_pending(self) -> list[TransferRecord]:
        """Records still pending or polling for an attestation."""

    async def list_by_status(
        self,
        statuses: Collection[TransferStatus],
    ) -> list[TransferRecord]:
        """Records in any of the given statuses."""


class AttestationClient(Protocol):
    """Attestation service port."""

    async def poll(
        self,
        source_domain: int,
        tx_hash: str,
        *,
        poll_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Attestation:
        """Poll until the attestation is complete or the timeout expires."""


class ChainGateway(Protocol):
    """Log scanning and transaction submission on one chain."""

    async def block_number(self) -> int:
        """Current chain tip."""

    def scan_events(
        self,
        contract_address: str,
        event_name: str,
        from_block: int,
        to_block: int,
        argument_filters: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChainEvent]:
        """Yield matching events in bounded block chunks."""

    async def submit(
        self,
        contract_address: str,
        function_name: str,
        args: Sequence[Any],
        value_wei: int = 0,
    ) -> SubmissionReceipt:
        """Send a transaction and wait for its receipt."""

    async def token_balance(self, token_address: str, owner: str) -> int:
        """ERC-20 balance of `owner`."""

    async def signer_balance(self) -> int:
        """Native balance of the relayer account in wei."""


class TransferRelayer(Protocol):
    """Drives one transfer to a terminal state."""

    async def execute(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TransferRecord:
        """Run or resume the relay pipeline for one natural key."""


class RecoveryLog(Protocol):
    """Last-resort flat log of relay events."""

    def record_event(
        self,
        job_id: str,
        event: str,
        tx_hash: str,
        *,
        chain: str | None = None,
    ) -> None:
        """Append a pending event for a job."""

    def update_event_status(
        self,
        job_id: str,
        event: str,
        tx_hash: str,
        status: str,
        *,
        completion_tx_hash: str | None = None,
        error: str | None = None,
    ) -> None:
        """Update the latest matching event of a job."""

    def pending_recovery(self) -> list[RecoveryLogEvent]:
        """Events still pending or failed."""


__all__ = [
    "AttestationClient",
    "ChainGateway",
    "ClosableRepository",
    "RecoveryLog",
    "TransferRecordRepository",
    "TransferRelayer",
    "TransferStatusStore",
]
