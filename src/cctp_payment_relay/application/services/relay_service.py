"""Relay use-case service behind the HTTP surface."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Collection
from contextlib import suppress

from cctp_payment_relay.application.services.payment_listener import PaymentReleaseListener
from cctp_payment_relay.application.services.recovery_manager import RecoveryManager
from cctp_payment_relay.domain.api_models import (
    CctpStatusResponse,
    HealthResponse,
    ListenerControlResponse,
    LockMilestoneRequest,
    PaymentLogResponse,
    RecentCompletionResponse,
    RecoveryLogEntryResponse,
    RelayStatsResponse,
    RelayTriggerResponse,
    ReleasePaymentRequest,
    SettleDisputeRequest,
    StartJobRequest,
    TransferStatusResponse,
)
from cctp_payment_relay.domain.chains import ChainDirectory
from cctp_payment_relay.domain.entities import StatusLookup, TransferKey, TransferRecord, utc_now
from cctp_payment_relay.domain.errors import (
    RelayCancelledError,
    RelayConfigurationError,
    TransferNotFoundError,
    TransferValidationError,
    TransientProviderError,
)
from cctp_payment_relay.domain.ports import RecoveryLog, TransferRelayer, TransferStatusStore
from cctp_payment_relay.domain.transfer_types import (
    TERMINAL_STATUSES,
    ProcessingStatus,
    TransferOperation,
    TransferStatus,
    parse_operation,
)

logger = logging.getLogger(__name__)

_DEFAULT_MAX_CONCURRENT_RELAYS = 8
_DEFAULT_RECOVERY_COOLDOWN_SECONDS = 5.0
_RECENT_COMPLETIONS = 10

_PAYMENT_LOG_STATUSES = frozenset(
    {TransferStatus.PENDING, TransferStatus.POLLING_ATTESTATION, TransferStatus.FAILED}
)


def normalize_tx_hash(value: str) -> str:
    """Trim and lowercase 0x-prefixed hashes so equal hashes share one key."""

    tx_hash = value.strip()
    if tx_hash[:2].lower() == "0x":
        return tx_hash.lower()
    return tx_hash


class RelayService:
    """Accepts relay triggers, answers status lookups and owns relay tasks.

    Each accepted trigger claims its natural key in the status store before
    any work starts, so duplicate triggers collapse into one relay. Relays
    run as background tasks bounded by `max_concurrent_relays`. An optional
    release listener feeds `PaymentReleased` events from the native chain
    into the same trigger path.
    """

    def __init__(
        self,
        store: TransferStatusStore,
        relayer: TransferRelayer,
        chains: ChainDirectory,
        *,
        recovery_log: RecoveryLog | None = None,
        max_concurrent_relays: int = _DEFAULT_MAX_CONCURRENT_RELAYS,
        recovery_cooldown_seconds: float = _DEFAULT_RECOVERY_COOLDOWN_SECONDS,
        release_listener: PaymentReleaseListener | None = None,
        job_contract_address: str | None = None,
        listener_autostart: bool = False,
    ) -> None:
        self._store = store
        self._relayer = relayer
        self._chains = chains
        self._recovery_log = recovery_log
        self._slots = asyncio.Semaphore(max(max_concurrent_relays, 1))
        self._tasks: dict[TransferKey, asyncio.Task[None]] = {}
        self._cancel_events: dict[TransferKey, asyncio.Event] = {}
        self._status_keys: dict[TransferKey, str] = {}
        self._recent_completions: deque[TransferRecord] = deque(maxlen=_RECENT_COMPLETIONS)
        self._completed_count = 0
        self._started_at = time.monotonic()
        self._release_listener = release_listener
        self._job_contract_address = job_contract_address
        self._listener_autostart = listener_autostart
        self._accepting = True
        self._recovery = RecoveryManager(
            store,
            self._dispatch,
            cooldown_seconds=recovery_cooldown_seconds,
            recovery_log=recovery_log,
        )

    @property
    def recovery(self) -> RecoveryManager:
        return self._recovery

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    @property
    def listener_active(self) -> bool:
        return self._release_listener is not None and self._release_listener.active

    async def startup(self) -> None:
        """Start persistence retries and resume pending transfers."""

        self._accepting = True
        await self._store.start()
        resumed = await self._recovery.recover_pending()
        logger.info("Relay service started; %s pending transfer(s) resumed.", resumed)
        if self._listener_autostart and self._release_listener is not None:
            try:
                await self._release_listener.start(
                    self._on_payment_released,
                    self._tracked_job_ids,
                )
            except TransientProviderError as exc:
                logger.warning("Release listener did not start: %s", exc)

    async def shutdown(self) -> None:
        """Stop the listener and relay tasks, then flush the store."""

        self._accepting = False
        if self._release_listener is not None:
            await self._release_listener.stop()
        await self._recovery.stop()
        for cancel_event in self._cancel_events.values():
            cancel_event.set()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()
        self._cancel_events.clear()
        self._status_keys.clear()
        await self._store.stop()

    async def start_job(self, request: StartJobRequest) -> RelayTriggerResponse:
        """Handle `POST /api/start-job`."""

        return await self._trigger(TransferOperation.START_JOB, request.job_id, request.tx_hash)

    async def release_payment(self, request: ReleasePaymentRequest) -> RelayTriggerResponse:
        """Handle `POST /api/release-payment`."""

        return await self._trigger(
            TransferOperation.RELEASE_PAYMENT,
            request.job_id,
            request.source_tx_hash,
        )

    async def lock_milestone(self, request: LockMilestoneRequest) -> RelayTriggerResponse:
        """Handle `POST /api/lock-milestone`."""

        return await self._trigger(
            TransferOperation.LOCK_MILESTONE,
            request.job_id,
            request.tx_hash,
        )

    async def settle_dispute(self, request: SettleDisputeRequest) -> RelayTriggerResponse:
        """Handle `POST /api/settle-dispute`."""

        return await self._trigger(
            TransferOperation.SETTLE_DISPUTE,
            request.job_id,
            request.tx_hash,
            dispute_id=request.dispute_id,
        )

    async def get_start_job_status(self, job_id: str) -> TransferStatusResponse:
        return self._status_response(
            await self._store.get(TransferOperation.START_JOB, job_id.strip())
        )

    async def get_release_payment_status(self, status_key: str) -> TransferStatusResponse:
        return self._status_response(
            await self._store.get_by_key(TransferOperation.RELEASE_PAYMENT, status_key)
        )

    async def get_lock_milestone_status(self, status_key: str) -> TransferStatusResponse:
        return self._status_response(
            await self._store.get_by_key(TransferOperation.LOCK_MILESTONE, status_key)
        )

    async def get_settle_dispute_status(self, job_id: str) -> TransferStatusResponse:
        return self._status_response(
            await self._store.get(TransferOperation.SETTLE_DISPUTE, job_id.strip())
        )

    async def get_cctp_status(self, operation: str, job_id: str) -> CctpStatusResponse:
        """Status lookup by operation name; unknown transfers are `found: false`."""

        parsed = parse_operation(operation)
        lookup = await self._find(parsed, job_id.strip())
        if lookup is None:
            return CctpStatusResponse(found=False)

        self._after_lookup(lookup)
        record = lookup.record
        return CctpStatusResponse(
            found=True,
            status=record.status,
            step=record.step,
            status_key=record.status_key,
            completion_tx_hash=record.completion_tx_hash,
            last_error=record.last_error,
            from_database=lookup.from_database,
        )

    async def payment_log(self) -> PaymentLogResponse:
        """Unfinished and failed transfers plus the flat recovery log."""

        records = await self._store.list_by_status(_PAYMENT_LOG_STATUSES)
        events = (
            []
            if self._recovery_log is None
            else await asyncio.to_thread(self._recovery_log.pending_recovery)
        )
        return PaymentLogResponse(
            transfers=[
                TransferStatusResponse.from_record(record, from_database=False)
                for record in records
            ],
            recovery_log=[RecoveryLogEntryResponse.from_event(event) for event in events],
        )

    async def release_payment_from_event(
        self,
        job_id: str,
        tx_hash: str,
    ) -> RelayTriggerResponse:
        """Relay a release seen by the listener; the event tx is the burn."""

        return await self._trigger(
            TransferOperation.RELEASE_PAYMENT,
            job_id,
            tx_hash,
            burn_tx_hash=tx_hash,
        )

    async def start_listener(self) -> ListenerControlResponse:
        """Handle `POST /api/start-listener`."""

        listener = self._require_listener()
        if not await listener.start(self._on_payment_released, self._tracked_job_ids):
            return ListenerControlResponse(message="Event listener already active")
        return ListenerControlResponse(message="Event listener started")

    async def stop_listener(self) -> ListenerControlResponse:
        """Handle `POST /api/stop-listener`."""

        if self._release_listener is None or not await self._release_listener.stop():
            return ListenerControlResponse(message="Event listener not active")
        return ListenerControlResponse(message="Event listener stopped")

    def stats(self) -> RelayStatsResponse:
        """In-flight relays and the latest completions of this process."""

        return RelayStatsResponse(
            processing_jobs=[
                self._status_keys[key]
                for key, task in self._tasks.items()
                if not task.done() and key in self._status_keys
            ],
            recent_completions=[
                RecentCompletionResponse.from_record(record)
                for record in reversed(self._recent_completions)
            ],
            event_listener_active=self.listener_active,
            native_chain=self._chains.native.name,
            job_contract_address=self._job_contract_address,
        )

    def health(self) -> HealthResponse:
        return HealthResponse(
            uptime_seconds=round(time.monotonic() - self._started_at, 3),
            processing_jobs=self.in_flight,
            completed_jobs=self._completed_count,
            event_listener_active=self.listener_active,
            timestamp=utc_now(),
        )

    def _require_listener(self) -> PaymentReleaseListener:
        if self._release_listener is None:
            raise RelayConfigurationError(
                "The release listener needs an RPC URL for the native chain "
                "and a job contract address."
            )
        return self._release_listener

    async def _on_payment_released(self, job_id: str, tx_hash: str) -> None:
        response = await self.release_payment_from_event(job_id, tx_hash)
        logger.info(
            "Listener release of job '%s' is %s (%s).",
            job_id,
            response.status,
            response.status_key,
        )

    async def _tracked_job_ids(self) -> Collection[str]:
        records = await self._store.list_by_status(list(TransferStatus))
        return {record.job_id for record in records}

    async def _trigger(
        self,
        operation: TransferOperation,
        job_id: str,
        tx_hash: str,
        *,
        dispute_id: str | None = None,
        burn_tx_hash: str | None = None,
    ) -> RelayTriggerResponse:
        job_id = job_id.strip()
        source_tx_hash = normalize_tx_hash(tx_hash)
        if not job_id or not source_tx_hash:
            raise TransferValidationError("jobId and transaction hash must not be blank.")

        route = self._chains.route_for(operation, job_id)
        candidate = TransferRecord(
            operation=operation,
            job_id=job_id,
            source_tx_hash=source_tx_hash,
            source_chain=route.source.name,
            source_domain=route.source.cctp_domain,
            destination_chain=route.destination.name,
            destination_domain=route.destination.cctp_domain,
            dispute_id=dispute_id,
            burn_tx_hash=None if burn_tx_hash is None else normalize_tx_hash(burn_tx_hash),
        )
        result = await self._store.claim(candidate)
        record = result.record

        if result.claimed:
            logger.info(
                "Accepted %s for job '%s' (tx %s, %s -> %s, attempt %s).",
                operation,
                job_id,
                source_tx_hash,
                route.source.name,
                route.destination.name,
                record.attempt,
            )
            if self._recovery_log is not None:
                await asyncio.to_thread(
                    self._recovery_log.record_event,
                    job_id,
                    operation.value,
                    source_tx_hash,
                    chain=route.source.name,
                )
            await self._dispatch(record)
            status = ProcessingStatus.PROCESSING
        elif record.status is TransferStatus.COMPLETED:
            status = ProcessingStatus.ALREADY_COMPLETED
        else:
            await self._dispatch(record)
            status = ProcessingStatus.ALREADY_PROCESSING

        return RelayTriggerResponse(
            status=status,
            job_id=record.job_id,
            status_key=record.status_key,
        )

    async def _find(self, operation: TransferOperation, key: str) -> StatusLookup | None:
        try:
            return await self._store.get(operation, key)
        except TransferNotFoundError:
            pass
        try:
            return await self._store.get_by_key(operation, key)
        except TransferNotFoundError:
            return None

    def _status_response(self, lookup: StatusLookup) -> TransferStatusResponse:
        self._after_lookup(lookup)
        return TransferStatusResponse.from_record(
            lookup.record,
            from_database=lookup.from_database,
        )

    def _after_lookup(self, lookup: StatusLookup) -> None:
        if lookup.from_database:
            self._recovery.schedule()

    async def _dispatch(self, record: TransferRecord) -> bool:
        """Start a relay task unless one is already running for the key."""

        if not self._accepting or record.status in TERMINAL_STATUSES:
            return False
        key = record.natural_key
        task = self._tasks.get(key)
        if task is not None and not task.done():
            return False

        cancel_event = asyncio.Event()
        self._cancel_events[key] = cancel_event
        self._status_keys[key] = record.status_key
        self._tasks[key] = asyncio.create_task(
            self._run_relay(key, cancel_event),
            name=f"relay-{record.operation}-{record.source_tx_hash}",
        )
        return True

    async def _run_relay(self, key: TransferKey, cancel_event: asyncio.Event) -> None:
        operation, source_tx_hash = key
        try:
            async with self._slots:
                record = await self._relayer.execute(
                    operation,
                    source_tx_hash,
                    cancel_event=cancel_event,
                )
            if record.status is TransferStatus.COMPLETED:
                self._completed_count += 1
                self._recent_completions.append(record)
        except RelayCancelledError:
            pass
        except Exception:
            logger.exception("Relay task for %s %s crashed.", operation, source_tx_hash)
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                self._tasks.pop(key, None)
                self._cancel_events.pop(key, None)
                self._status_keys.pop(key, None)


__all__ = ["RelayService", "normalize_tx_hash"]
