"""In-memory repository implementation for transfer records."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
from dataclasses import replace

from cctp_payment_relay.domain.entities import (
    ClaimResult,
    TransferKey,
    TransferRecord,
    utc_now,
)
from cctp_payment_relay.domain.ports import TransferRecordRepository
from cctp_payment_relay.domain.transfer_types import (
    TransferOperation,
    TransferStatus,
    TransferStep,
    is_status_transition_allowed,
)


class InMemoryTransferRepository(TransferRecordRepository):
    """Simple durable-store stand-in for local development and tests."""

    def __init__(self) -> None:
        self._records: dict[TransferKey, TransferRecord] = {}
        self._lock = asyncio.Lock()

    async def get(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
    ) -> TransferRecord | None:
        """Return by natural key."""

        record = self._records.get((operation, source_tx_hash))
        return None if record is None else record.copy()

    async def get_latest_for_job(
        self,
        operation: TransferOperation,
        job_id: str,
    ) -> TransferRecord | None:
        """Return the newest record of one operation on a job."""

        candidates = [
            record
            for record in self._records.values()
            if record.operation is operation and record.job_id == job_id
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda record: record.created_at)
        return latest.copy()

    async def list_by_status(
        self,
        statuses: Collection[TransferStatus],
    ) -> list[TransferRecord]:
        """Return matching records ordered by creation time."""

        wanted = set(statuses)
        matching = [record for record in self._records.values() if record.status in wanted]
        matching.sort(key=lambda record: record.created_at)
        return [record.copy() for record in matching]

    async def claim(self, record: TransferRecord) -> ClaimResult:
        """Insert pending record or restart a failed one."""

        async with self._lock:
            existing = self._records.get(record.natural_key)
            if existing is None:
                stored = record.copy()
                self._records[record.natural_key] = stored
                return ClaimResult(record=stored.copy(), claimed=True)

            if existing.status is not TransferStatus.FAILED:
                return ClaimResult(record=existing.copy(), claimed=False)

            restarted = replace(
                existing,
                status=TransferStatus.PENDING,
                step=TransferStep.INITIATED.value,
                last_error=None,
                completion_tx_hash=None,
                completed_at=None,
                attempt=existing.attempt + 1,
                updated_at=utc_now(),
            )
            self._records[record.natural_key] = restarted
            return ClaimResult(record=restarted.copy(), claimed=True)

    async def upsert(self, record: TransferRecord) -> TransferRecord:
        """Persist record unless it would regress the stored status."""

        async with self._lock:
            existing = self._records.get(record.natural_key)
            if existing is None:
                stored = record.copy()
            elif not is_status_transition_allowed(existing.status, record.status):
                return existing.copy()
            else:
                stored = replace(
                    record,
                    created_at=existing.created_at,
                    attempt=max(existing.attempt, record.attempt),
                    updated_at=utc_now(),
                )
            self._records[record.natural_key] = stored
            return stored.copy()


__all__ = ["InMemoryTransferRepository"]
