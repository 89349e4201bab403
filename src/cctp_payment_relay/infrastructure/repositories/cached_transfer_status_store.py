"""Write-through cache over the durable transfer repository."""

from __future__ import annotations

import asyncio
import logging
import random
from collections import defaultdict
from collections.abc import Collection
from contextlib import suppress
from dataclasses import replace

from cctp_payment_relay.domain.entities import (
    ClaimResult,
    StatusLookup,
    TransferKey,
    TransferRecord,
    utc_now,
)
from cctp_payment_relay.domain.errors import (
    PersistenceReadError,
    PersistenceWriteError,
    TransferNotFoundError,
)
from cctp_payment_relay.domain.ports import (
    ClosableRepository,
    TransferRecordRepository,
    TransferStatusStore,
)
from cctp_payment_relay.domain.status_keys import parse_status_key
from cctp_payment_relay.domain.transfer_types import (
    ACTIVE_STATUSES,
    TransferOperation,
    TransferStatus,
    TransferStep,
    is_status_transition_allowed,
)

logger = logging.getLogger(__name__)


class CachedTransferStatusStore(TransferStatusStore):
    """In-process cache in front of a durable repository.

    Every write goes to the durable repository first. When that write fails
    the cache still takes the update, the record is queued, and a background
    loop retries the queued writes with exponential backoff. Reads that miss
    the cache fall through to the repository and are reported with
    `from_database=True`. A repository that cannot be read surfaces
    as `PersistenceReadError`; cached records keep being served.
    """

    def __init__(
        self,
        repository: TransferRecordRepository,
        *,
        retry_base_delay_seconds: float = 1.0,
        retry_max_delay_seconds: float = 60.0,
        retry_jitter_ratio: float = 0.2,
    ) -> None:
        self._repository = repository
        self._retry_base_delay_seconds = max(retry_base_delay_seconds, 0.001)
        self._retry_max_delay_seconds = max(
            retry_max_delay_seconds,
            self._retry_base_delay_seconds,
        )
        self._retry_jitter_ratio = max(min(retry_jitter_ratio, 1.0), 0.0)

        self._cache: dict[TransferKey, TransferRecord] = {}
        self._latest_by_job: dict[tuple[TransferOperation, str], TransferKey] = {}
        self._key_locks: defaultdict[TransferKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._deferred_writes: dict[TransferKey, TransferRecord] = {}

        self._task: asyncio.Task[None] | None = None
        self._wake_event = asyncio.Event()
        self._stopping = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()

    @property
    def repository(self) -> TransferRecordRepository:
        return self._repository

    @property
    def deferred_write_count(self) -> int:
        return len(self._deferred_writes)

    async def start(self) -> None:
        """Start the deferred-write retry loop if not already running."""

        async with self._lifecycle_lock:
            task = self._task
            if task is not None and not task.done():
                return

            self._stopping.clear()
            self._wake_event.set()
            self._task = asyncio.create_task(
                self._run_retry_loop(),
                name="transfer-status-store-write-retry",
            )

    async def stop(self) -> None:
        """Stop the retry loop, attempt a final flush and release connections."""

        async with self._lifecycle_lock:
            task = self._task
            self._task = None
            if task is not None:
                self._stopping.set()
                self._wake_event.set()
                task.cancel()

        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

        if self._deferred_writes and not await self.flush_deferred_writes():
            logger.warning(
                "Stopping with %s transfer write(s) not persisted.",
                len(self._deferred_writes),
            )
        if isinstance(self._repository, ClosableRepository):
            await self._repository.close()

    async def claim(self, record: TransferRecord) -> ClaimResult:
        """Claim a natural key; falls back to the cache when the database is down."""

        async with self._key_locks[record.natural_key]:
            try:
                result = await self._repository.claim(record)
            except PersistenceWriteError as exc:
                logger.warning(
                    "Durable claim failed for %s %s, continuing from cache: %s",
                    record.operation,
                    record.source_tx_hash,
                    exc,
                )
                result = self._claim_in_cache(record)
                if result.claimed:
                    self._defer_write(result.record)

            self._remember(result.record)
            return ClaimResult(record=result.record.copy(), claimed=result.claimed)

    async def upsert(self, record: TransferRecord) -> TransferRecord:
        """Write through; regressive updates are ignored and the current row returned."""

        key = record.natural_key
        async with self._key_locks[key]:
            cached = self._cache.get(key)
            if cached is not None and not is_status_transition_allowed(
                cached.status, record.status
            ):
                logger.debug(
                    "Ignoring %s -> %s update for %s %s.",
                    cached.status,
                    record.status,
                    record.operation,
                    record.source_tx_hash,
                )
                return cached.copy()

            try:
                stored = await self._repository.upsert(record)
            except PersistenceWriteError as exc:
                logger.warning(
                    "Durable write failed for %s %s, keeping it in cache for retry: %s",
                    record.operation,
                    record.source_tx_hash,
                    exc,
                )
                stored = replace(record, updated_at=utc_now())
                self._defer_write(stored)
            else:
                self._deferred_writes.pop(key, None)

            self._remember(stored)
            return stored.copy()

    async def get(self, operation: TransferOperation, job_id: str) -> StatusLookup:
        """Latest record of one operation on a job."""

        cached_key = self._latest_by_job.get((operation, job_id))
        if cached_key is not None:
            return StatusLookup(record=self._cache[cached_key].copy(), from_database=False)

        try:
            record = await self._repository.get_latest_for_job(operation, job_id)
        except (PersistenceReadError, OSError) as exc:
            raise self._read_failed(f"{operation} transfer of job '{job_id}'", exc) from exc
        if record is None:
            raise TransferNotFoundError(f"No {operation} transfer found for job '{job_id}'.")
        self._remember(record)
        return StatusLookup(record=record.copy(), from_database=True)

    async def get_by_key(self, operation: TransferOperation, status_key: str) -> StatusLookup:
        """Record addressed by a caller-facing status key."""

        parsed = parse_status_key(operation, status_key)
        if parsed.source_tx_hash is None:
            return await self.get(operation, parsed.job_id)

        lookup = await self._lookup_natural_key(operation, parsed.source_tx_hash)
        if lookup is not None and lookup.record.job_id == parsed.job_id:
            return lookup
        if operation is TransferOperation.RELEASE_PAYMENT:
            # Job ids contain dashes; a bare job id also parses as job-tx.
            return await self.get(operation, status_key.strip())
        raise TransferNotFoundError(f"No {operation} transfer found for key '{status_key}'.")

    async def get_record(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
    ) -> TransferRecord:
        """Record by natural key."""

        lookup = await self._lookup_natural_key(operation, source_tx_hash)
        if lookup is None:
            raise TransferNotFoundError(
                f"No {operation} transfer found for transaction '{source_tx_hash}'."
            )
        return lookup.record

    async def list_pending(self) -> list[TransferRecord]:
        """Records still pending or polling for an attestation."""

        return await self.list_by_status(ACTIVE_STATUSES)

    async def list_by_status(
        self,
        statuses: Collection[TransferStatus],
    ) -> list[TransferRecord]:
        """Durable rows overlaid with this process's cached state."""

        wanted = set(statuses)
        try:
            durable = await self._repository.list_by_status(wanted)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Listing transfers from the durable store failed: %s", exc)
            durable = []

        merged: dict[TransferKey, TransferRecord] = {}
        for record in durable:
            cached = self._cache.get(record.natural_key)
            current = record if cached is None else cached
            if current.status in wanted:
                merged[record.natural_key] = current.copy()
        for key, cached in self._cache.items():
            if key not in merged and cached.status in wanted:
                merged[key] = cached.copy()

        return sorted(merged.values(), key=lambda record: record.created_at)

    async def flush_deferred_writes(self) -> bool:
        """Retry queued writes once; returns True when the queue is empty."""

        for key, record in list(self._deferred_writes.items()):
            try:
                await self._repository.upsert(record)
            except PersistenceWriteError as exc:
                logger.warning(
                    "Retrying durable write for %s %s failed: %s",
                    record.operation,
                    record.source_tx_hash,
                    exc,
                )
                continue
            if self._deferred_writes.get(key) is record:
                del self._deferred_writes[key]
        return not self._deferred_writes

    async def _lookup_natural_key(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
    ) -> StatusLookup | None:
        cached = self._cache.get((operation, source_tx_hash))
        if cached is not None:
            return StatusLookup(record=cached.copy(), from_database=False)

        try:
            record = await self._repository.get(operation, source_tx_hash)
        except (PersistenceReadError, OSError) as exc:
            raise self._read_failed(f"{operation} transfer {source_tx_hash}", exc) from exc
        if record is None:
            return None
        self._remember(record)
        return StatusLookup(record=record.copy(), from_database=True)

    def _read_failed(self, subject: str, exc: Exception) -> PersistenceReadError:
        logger.warning("Reading %s from the durable store failed: %s", subject, exc)
        return PersistenceReadError(f"Durable store unavailable while reading {subject}.")

    def _claim_in_cache(self, record: TransferRecord) -> ClaimResult:
        cached = self._cache.get(record.natural_key)
        if cached is None:
            return ClaimResult(record=record.copy(), claimed=True)
        if cached.status is not TransferStatus.FAILED:
            return ClaimResult(record=cached.copy(), claimed=False)
        restarted = replace(
            cached,
            status=TransferStatus.PENDING,
            step=TransferStep.INITIATED.value,
            last_error=None,
            completion_tx_hash=None,
            completed_at=None,
            attempt=cached.attempt + 1,
            updated_at=utc_now(),
        )
        return ClaimResult(record=restarted, claimed=True)

    def _remember(self, record: TransferRecord) -> None:
        self._cache[record.natural_key] = record.copy()
        job_key = (record.operation, record.job_id)
        latest_key = self._latest_by_job.get(job_key)
        latest = None if latest_key is None else self._cache.get(latest_key)
        if latest is None or latest.created_at <= record.created_at:
            self._latest_by_job[job_key] = record.natural_key

    def _defer_write(self, record: TransferRecord) -> None:
        was_empty = not self._deferred_writes
        self._deferred_writes[record.natural_key] = record.copy()
        if was_empty:
            self._wake_event.set()

    async def _run_retry_loop(self) -> None:
        failed_rounds = 0
        while not self._stopping.is_set():
            if self._deferred_writes:
                try:
                    flushed = await self.flush_deferred_writes()
                except Exception:
                    logger.exception("Transfer write retry loop failed.")
                    flushed = False
                failed_rounds = 0 if flushed else failed_rounds + 1

            self._wake_event.clear()
            timeout = self._next_retry_delay(failed_rounds) if self._deferred_writes else None
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
            except TimeoutError:
                pass

    def _next_retry_delay(self, failed_rounds: int) -> float:
        base_delay = self._retry_base_delay_seconds * (2 ** max(failed_rounds - 1, 0))
        capped_delay = min(base_delay, self._retry_max_delay_seconds)
        if self._retry_jitter_ratio > 0:
            jitter_window = capped_delay * self._retry_jitter_ratio
            jitter = random.uniform(-jitter_window, jitter_window)
            capped_delay = max(capped_delay + jitter, self._retry_base_delay_seconds)
        return capped_delay


__all__ = ["CachedTransferStatusStore"]
