"""Drives one transfer from its source event to the destination mint."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Mapping

from cctp_payment_relay.application.services.event_watcher import EventWatcher
from cctp_payment_relay.domain.chain_models import SubmissionOutcome, SubmissionReceipt
from cctp_payment_relay.domain.chains import ChainDirectory, ChainProfile
from cctp_payment_relay.domain.entities import TransferRecord, utc_now
from cctp_payment_relay.domain.errors import (
    DestinationRevertError,
    PostConditionError,
    RelayCancelledError,
    RelayConfigurationError,
    RelayError,
    TransientProviderError,
)
from cctp_payment_relay.domain.polling import ensure_not_cancelled, wait_for_next_poll
from cctp_payment_relay.domain.ports import (
    AttestationClient,
    ChainGateway,
    RecoveryLog,
    TransferRelayer,
    TransferStatusStore,
)
from cctp_payment_relay.domain.transfer_types import (
    KNOWN_BURN_OPERATIONS,
    TERMINAL_STATUSES,
    TransferOperation,
    TransferStatus,
    TransferStep,
)

logger = logging.getLogger(__name__)

ALREADY_COMPLETED_TX_HASH = "already_completed"

_DEFAULT_MIN_RELAYER_BALANCE_WEI = 10**15
_DEFAULT_SUBMIT_ATTEMPTS = 3
_DEFAULT_SUBMIT_RETRY_BASE_DELAY_SECONDS = 2.0


def minimum_expected_delta(
    amount: int,
    commission_percent: float,
    commission_min_units: int = 0,
) -> int:
    """Smallest recipient balance increase that still confirms a mint of `amount`."""

    commission = max(math.ceil(amount * commission_percent / 100), commission_min_units)
    return max(amount - commission, 0)


class RelayExecutor(TransferRelayer):
    """Idempotent relay pipeline for one natural key.

    Re-running a completed or failed record does nothing. Re-running an
    active record resumes from what was persisted: a known burn hash skips
    event scanning and a stored attestation skips polling. The destination
    call itself is replay protected, so a resubmission after a crash comes
    back as already completed rather than minting twice.
    """

    def __init__(
        self,
        store: TransferStatusStore,
        chains: ChainDirectory,
        gateways: Mapping[str, ChainGateway],
        attestation_client: AttestationClient,
        event_watcher: EventWatcher,
        *,
        job_contract_address: str | None = None,
        recovery_log: RecoveryLog | None = None,
        attestation_poll_interval_seconds: float | None = None,
        attestation_timeout_seconds: float | None = None,
        verify_balance_delta: bool = True,
        commission_percent: float = 1.0,
        commission_min_units: int = 0,
        min_relayer_balance_wei: int = _DEFAULT_MIN_RELAYER_BALANCE_WEI,
        submit_attempts: int = _DEFAULT_SUBMIT_ATTEMPTS,
        submit_retry_base_delay_seconds: float = _DEFAULT_SUBMIT_RETRY_BASE_DELAY_SECONDS,
    ) -> None:
        self._store = store
        self._chains = chains
        self._gateways = dict(gateways)
        self._attestation_client = attestation_client
        self._event_watcher = event_watcher
        self._job_contract_address = job_contract_address
        self._recovery_log = recovery_log
        self._attestation_poll_interval_seconds = attestation_poll_interval_seconds
        self._attestation_timeout_seconds = attestation_timeout_seconds
        self._verify_balance_delta = verify_balance_delta
        self._commission_percent = commission_percent
        self._commission_min_units = commission_min_units
        self._min_relayer_balance_wei = min_relayer_balance_wei
        self._submit_attempts = max(submit_attempts, 1)
        self._submit_retry_base_delay_seconds = max(submit_retry_base_delay_seconds, 0.0)

    async def execute(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TransferRecord:
        """Run or resume the pipeline and return the stored record."""

        record = await self._store.get_record(operation, source_tx_hash)
        if record.status in TERMINAL_STATUSES:
            logger.debug(
                "%s %s already %s, nothing to do.",
                operation,
                source_tx_hash,
                record.status,
            )
            return record

        logger.info(
            "Relaying %s for job '%s' (%s -> %s, attempt %s, step %s).",
            operation,
            record.job_id,
            record.source_chain,
            record.destination_chain,
            record.attempt,
            record.step,
        )
        try:
            return await self._run(record, cancel_event)
        except RelayCancelledError:
            logger.info(
                "Relay of %s %s cancelled at step %s.",
                operation,
                source_tx_hash,
                record.step,
            )
            raise
        except RelayError as exc:
            return await self._fail(record, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error relaying %s %s.", operation, source_tx_hash)
            return await self._fail(record, f"Unexpected error: {exc}")

    async def _run(
        self,
        record: TransferRecord,
        cancel_event: asyncio.Event | None,
    ) -> TransferRecord:
        source = self._chains.get(record.source_chain)
        destination = self._chains.get(record.destination_chain)

        if not record.burn_tx_hash:
            if record.operation in KNOWN_BURN_OPERATIONS:
                record.burn_tx_hash = record.source_tx_hash
            else:
                await self._locate_burn(record, source, cancel_event)

        if not record.has_attestation:
            await self._await_attestation(record, source, cancel_event)

        ensure_not_cancelled(cancel_event, f"Relay of {record.operation} {record.source_tx_hash}")
        gateway = self._gateway(destination)
        if not destination.receiver_address:
            raise RelayConfigurationError(
                f"No receiver contract configured for '{destination.name}'."
            )

        record.step = TransferStep.EXECUTING_RECEIVE.value
        await self._save(record)
        await self._warn_if_low_balance(gateway, destination)
        balance_before = await self._recipient_balance_before(gateway, destination, record)

        receipt = await self._submit(gateway, destination, record, cancel_event)
        if receipt.outcome is SubmissionOutcome.REVERTED:
            raise DestinationRevertError(
                receipt.revert_reason or "unknown revert reason",
                receipt.tx_hash,
            )

        if receipt.outcome is SubmissionOutcome.ALREADY_COMPLETED:
            logger.info(
                "%s for job '%s' was already relayed on %s (%s).",
                record.operation,
                record.job_id,
                destination.name,
                receipt.revert_reason,
            )
            record.completion_tx_hash = ALREADY_COMPLETED_TX_HASH
            record.step = TransferStep.ALREADY_RELAYED.value
        else:
            record.completion_tx_hash = receipt.tx_hash
            if balance_before is not None:
                await self._verify_recipient_balance(gateway, destination, record, balance_before)
            record.step = TransferStep.RELAYED.value

        record.status = TransferStatus.COMPLETED
        record.completed_at = utc_now()
        record.last_error = None
        stored = await self._save(record)
        logger.info(
            "%s for job '%s' completed on %s: %s",
            record.operation,
            record.job_id,
            destination.name,
            record.completion_tx_hash,
        )
        if self._recovery_log is not None:
            await asyncio.to_thread(
                self._recovery_log.update_event_status,
                record.job_id,
                record.operation.value,
                record.source_tx_hash,
                TransferStatus.COMPLETED.value,
                completion_tx_hash=record.completion_tx_hash,
            )
        return stored

    async def _locate_burn(
        self,
        record: TransferRecord,
        source: ChainProfile,
        cancel_event: asyncio.Event | None,
    ) -> None:
        if not self._job_contract_address:
            raise RelayConfigurationError(
                f"A job contract address is required to watch for {record.operation} events."
            )

        record.step = TransferStep.WAITING_FOR_EVENT.value
        await self._save(record)
        event = await self._event_watcher.find_authorizing_event(
            record.operation,
            source,
            self._job_contract_address,
            {"jobId": record.job_id},
            cancel_event=cancel_event,
        )
        record.burn_tx_hash = event.tx_hash
        if event.recipient is not None:
            record.recipient = event.recipient
        if event.amount is not None:
            record.amount = event.amount
        record.step = TransferStep.EVENT_DETECTED.value
        await self._save(record)

    async def _await_attestation(
        self,
        record: TransferRecord,
        source: ChainProfile,
        cancel_event: asyncio.Event | None,
    ) -> None:
        assert record.burn_tx_hash is not None
        record.status = TransferStatus.POLLING_ATTESTATION
        record.step = TransferStep.POLLING_ATTESTATION.value
        await self._save(record)

        attestation = await self._attestation_client.poll(
            source.cctp_domain,
            record.burn_tx_hash,
            poll_interval_seconds=self._attestation_poll_interval_seconds,
            timeout_seconds=self._attestation_timeout_seconds,
            cancel_event=cancel_event,
        )
        record.attestation_message = attestation.message
        record.attestation_signature = attestation.attestation
        if attestation.mint_recipient is not None:
            record.recipient = attestation.mint_recipient
        if attestation.amount is not None:
            record.amount = attestation.amount
        record.step = TransferStep.ATTESTATION_READY.value
        await self._save(record)

    async def _submit(
        self,
        gateway: ChainGateway,
        destination: ChainProfile,
        record: TransferRecord,
        cancel_event: asyncio.Event | None,
    ) -> SubmissionReceipt:
        assert destination.receiver_address is not None
        args = (
            bytes.fromhex(_strip_0x(record.attestation_message or "")),
            bytes.fromhex(_strip_0x(record.attestation_signature or "")),
        )
        activity = f"Submitting {destination.receive_function} on {destination.name}"
        attempt = 0
        while True:
            attempt += 1
            try:
                return await gateway.submit(
                    destination.receiver_address,
                    destination.receive_function,
                    args,
                )
            except TransientProviderError as exc:
                if attempt >= self._submit_attempts:
                    raise
                delay = self._submit_retry_base_delay_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s failed (attempt %s/%s), retrying in %.1fs: %s",
                    activity,
                    attempt,
                    self._submit_attempts,
                    delay,
                    exc,
                )
                await wait_for_next_poll(delay, cancel_event, activity)

    async def _warn_if_low_balance(self, gateway: ChainGateway, destination: ChainProfile) -> None:
        try:
            balance = await gateway.signer_balance()
        except TransientProviderError as exc:
            logger.warning("Could not read relayer balance on %s: %s", destination.name, exc)
            return
        if balance < self._min_relayer_balance_wei:
            logger.warning(
                "Relayer balance on %s is low: %s wei (minimum %s wei).",
                destination.name,
                balance,
                self._min_relayer_balance_wei,
            )

    async def _recipient_balance_before(
        self,
        gateway: ChainGateway,
        destination: ChainProfile,
        record: TransferRecord,
    ) -> int | None:
        if not self._verify_balance_delta:
            return None
        if destination.usdc_address is None or record.recipient is None or record.amount is None:
            logger.info(
                "Skipping balance check for %s %s: token, recipient or amount unknown.",
                record.operation,
                record.source_tx_hash,
            )
            return None
        try:
            return await gateway.token_balance(destination.usdc_address, record.recipient)
        except TransientProviderError as exc:
            logger.warning(
                "Could not read recipient balance before relaying %s %s, skipping check: %s",
                record.operation,
                record.source_tx_hash,
                exc,
            )
            return None

    async def _verify_recipient_balance(
        self,
        gateway: ChainGateway,
        destination: ChainProfile,
        record: TransferRecord,
        balance_before: int,
    ) -> None:
        assert destination.usdc_address is not None
        assert record.recipient is not None and record.amount is not None
        try:
            balance_after = await gateway.token_balance(destination.usdc_address, record.recipient)
        except TransientProviderError as exc:
            raise PostConditionError(
                f"Could not confirm the mint to {record.recipient} after tx "
                f"{record.completion_tx_hash}: {exc}"
            ) from exc

        delta = balance_after - balance_before
        expected = minimum_expected_delta(
            record.amount,
            self._commission_percent,
            self._commission_min_units,
        )
        if delta < expected:
            raise PostConditionError(
                f"Recipient {record.recipient} balance rose by {delta}, expected at least "
                f"{expected} of {record.amount} after tx {record.completion_tx_hash}."
            )

    async def _fail(self, record: TransferRecord, error: str) -> TransferRecord:
        logger.warning(
            "%s for job '%s' failed at step %s: %s",
            record.operation,
            record.job_id,
            record.step,
            error,
        )
        record.status = TransferStatus.FAILED
        record.step = TransferStep.FAILED.value
        record.last_error = error
        stored = await self._save(record)
        if self._recovery_log is not None:
            await asyncio.to_thread(
                self._recovery_log.update_event_status,
                record.job_id,
                record.operation.value,
                record.source_tx_hash,
                TransferStatus.FAILED.value,
                completion_tx_hash=record.completion_tx_hash,
                error=error,
            )
        return stored

    async def _save(self, record: TransferRecord) -> TransferRecord:
        record.updated_at = utc_now()
        return await self._store.upsert(record)

    def _gateway(self, chain: ChainProfile) -> ChainGateway:
        gateway = self._gateways.get(chain.name)
        if gateway is None:
            raise RelayConfigurationError(f"No chain gateway configured for '{chain.name}'.")
        return gateway


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


__all__ = ["ALREADY_COMPLETED_TX_HASH", "RelayExecutor", "minimum_expected_delta"]
