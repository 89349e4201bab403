from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path
from typing import Any

import httpx
import pytest

from cctp_payment_relay.application.services import (
    ALREADY_COMPLETED_TX_HASH,
    EventWatcher,
    RelayExecutor,
    minimum_expected_delta,
)
from cctp_payment_relay.domain.attestation_models import Attestation
from cctp_payment_relay.domain.chain_models import (
    ChainEvent,
    RevertKind,
    SubmissionOutcome,
    SubmissionReceipt,
)
from cctp_payment_relay.domain.chains import ChainDirectory, ChainProfile
from cctp_payment_relay.domain.entities import TransferRecord
from cctp_payment_relay.domain.errors import (
    AttestationTimeoutError,
    RelayCancelledError,
    TransientProviderError,
)
from cctp_payment_relay.domain.ports import AttestationClient, ChainGateway
from cctp_payment_relay.domain.transfer_types import (
    TransferOperation,
    TransferStatus,
    TransferStep,
)
from cctp_payment_relay.infrastructure.attestation import IrisAttestationClient
from cctp_payment_relay.infrastructure.recovery_log import JsonFilePaymentLog
from cctp_payment_relay.infrastructure.repositories import (
    CachedTransferStatusStore,
    InMemoryTransferRepository,
)

JOB_CONTRACT = "0x39158a9F92faB84561205B05223929eFF131455e"
RECIPIENT = "0x" + "12" * 20
OP_SEPOLIA = ChainProfile(
    name="OP Sepolia",
    chain_id=11155420,
    cctp_domain=2,
    layerzero_eid=40232,
    receiver_address="0xE737e5cEBEEBa77EFE34D4aa090756590b1CE275",
    usdc_address="0x5fd84259d66Cd46123540766Be93DFE6D43130D7",
)
ARBITRUM_SEPOLIA = ChainProfile(
    name="Arbitrum Sepolia",
    chain_id=421614,
    cctp_domain=3,
    layerzero_eid=40231,
    receiver_address="0x959d0fc6dD8efCf764BD3B0bbaC191F2D7Dd03f1",
    receive_function="receive",
    usdc_address="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
)
CHAINS = ChainDirectory([OP_SEPOLIA, ARBITRUM_SEPOLIA], native_chain="Arbitrum Sepolia")


class FakeGateway(ChainGateway):
    """Chain double: scripted receipts and a token ledger credited on success."""

    def __init__(
        self,
        receipts: Sequence[SubmissionReceipt | Exception] = (),
        *,
        minted: int = 0,
        tip: int = 1_000,
        events: Sequence[ChainEvent] = (),
    ) -> None:
        self.receipts = list(receipts)
        self.minted = minted
        self.tip = tip
        self.events = list(events)
        self.balances: dict[str, int] = {}
        self.submissions: list[tuple[str, str, tuple[Any, ...]]] = []

    async def block_number(self) -> int:
        return self.tip

    async def scan_events(
        self,
        contract_address: str,
        event_name: str,
        from_block: int,
        to_block: int,
        argument_filters: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChainEvent]:
        for event in self.events:
            if event.name != event_name or not from_block <= event.block_number <= to_block:
                continue
            if all(event.args.get(key) == value for key, value in (argument_filters or {}).items()):
                yield event

    async def submit(
        self,
        contract_address: str,
        function_name: str,
        args: Sequence[Any],
        value_wei: int = 0,
    ) -> SubmissionReceipt:
        self.submissions.append((contract_address, function_name, tuple(args)))
        outcome = self.receipts.pop(0) if self.receipts else _confirmed()
        if isinstance(outcome, Exception):
            raise outcome
        if outcome.outcome is SubmissionOutcome.CONFIRMED:
            self.balances[RECIPIENT] = self.balances.get(RECIPIENT, 0) + self.minted
        return outcome

    async def token_balance(self, token_address: str, owner: str) -> int:
        return self.balances.get(owner, 0)

    async def signer_balance(self) -> int:
        return 10**18


class StubAttestationClient(AttestationClient):
    def __init__(self, attestation: Attestation | None = None) -> None:
        self.attestation = attestation or Attestation(
            message="0x0102",
            attestation="0x0304",
            mint_recipient=RECIPIENT,
            amount=1_000_000,
        )
        self.calls: list[tuple[int, str]] = []

    async def poll(
        self,
        source_domain: int,
        tx_hash: str,
        *,
        poll_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Attestation:
        self.calls.append((source_domain, tx_hash))
        return self.attestation


def _confirmed(tx_hash: str = "0xc0ffee") -> SubmissionReceipt:
    return SubmissionReceipt(
        outcome=SubmissionOutcome.CONFIRMED,
        tx_hash=tx_hash,
        block_number=42,
        gas_used=120_000,
    )


def _record(
    operation: TransferOperation = TransferOperation.START_JOB,
    job_id: str = "40232-1",
    source_tx_hash: str = "0xburn",
) -> TransferRecord:
    route = CHAINS.route_for(operation, job_id)
    return TransferRecord(
        operation=operation,
        job_id=job_id,
        source_tx_hash=source_tx_hash,
        source_chain=route.source.name,
        source_domain=route.source.cctp_domain,
        destination_chain=route.destination.name,
        destination_domain=route.destination.cctp_domain,
    )


def _executor(
    gateways: Mapping[str, ChainGateway],
    attestation_client: AttestationClient,
    **kwargs: Any,
) -> tuple[RelayExecutor, CachedTransferStatusStore]:
    store = CachedTransferStatusStore(InMemoryTransferRepository())
    executor = RelayExecutor(
        store,
        CHAINS,
        gateways,
        attestation_client,
        EventWatcher(gateways, poll_interval_seconds=0.001, timeout_seconds=0.5),
        job_contract_address=JOB_CONTRACT,
        submit_retry_base_delay_seconds=0.0,
        **kwargs,
    )
    return executor, store


def test_start_job_is_relayed_to_the_native_chain() -> None:
    destination = FakeGateway(minted=990_000)
    attestation_client = StubAttestationClient()
    executor, store = _executor({"Arbitrum Sepolia": destination}, attestation_client)

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.COMPLETED
    assert record.step == TransferStep.RELAYED.value
    assert record.completion_tx_hash == "0xc0ffee"
    assert record.burn_tx_hash == "0xburn"
    assert record.completed_at is not None
    assert attestation_client.calls == [(2, "0xburn")]
    assert destination.submissions == [
        (ARBITRUM_SEPOLIA.receiver_address, "receive", (b"\x01\x02", b"\x03\x04"))
    ]


def test_already_used_nonce_counts_as_completed() -> None:
    destination = FakeGateway(
        [
            SubmissionReceipt(
                outcome=SubmissionOutcome.ALREADY_COMPLETED,
                revert_kind=RevertKind.ALREADY_COMPLETED,
                revert_reason="Nonce already used",
            )
        ]
    )
    executor, store = _executor({"Arbitrum Sepolia": destination}, StubAttestationClient())

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.COMPLETED
    assert record.step == TransferStep.ALREADY_RELAYED.value
    assert record.completion_tx_hash == ALREADY_COMPLETED_TX_HASH
    assert record.last_error is None


def test_genuine_revert_fails_with_reason() -> None:
    destination = FakeGateway(
        [
            SubmissionReceipt(
                outcome=SubmissionOutcome.REVERTED,
                tx_hash="0xbad",
                revert_kind=RevertKind.GENERIC_REVERT,
                revert_reason="Invalid attestation length",
            )
        ]
    )
    executor, store = _executor({"Arbitrum Sepolia": destination}, StubAttestationClient())

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.FAILED
    assert record.step == TransferStep.FAILED.value
    assert record.last_error is not None
    assert "Invalid attestation length" in record.last_error
    assert "0xbad" in record.last_error


def test_short_mint_fails_the_balance_post_condition() -> None:
    destination = FakeGateway(minted=500_000)
    executor, store = _executor({"Arbitrum Sepolia": destination}, StubAttestationClient())

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.FAILED
    assert record.completion_tx_hash == "0xc0ffee"
    assert record.last_error is not None
    assert "expected at least 990000" in record.last_error
    assert "0xc0ffee" in record.last_error


def test_balance_check_can_be_disabled() -> None:
    destination = FakeGateway(minted=0)
    executor, store = _executor(
        {"Arbitrum Sepolia": destination},
        StubAttestationClient(),
        verify_balance_delta=False,
    )

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    assert asyncio.run(scenario()).status is TransferStatus.COMPLETED


def test_minimum_expected_delta_applies_percentage_or_flat_minimum() -> None:
    assert minimum_expected_delta(1_000_000, 1.0) == 990_000
    assert minimum_expected_delta(1_000_001, 1.0) == 990_000
    assert minimum_expected_delta(1_000_000, 1.0, commission_min_units=50_000) == 950_000
    assert minimum_expected_delta(100, 0.0) == 100
    assert minimum_expected_delta(10, 1.0, commission_min_units=50) == 0


def test_attestation_timeout_fails_the_record_near_the_deadline() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"messages": [{"status": "pending_confirmations"}]})

    destination = FakeGateway()
    executor, store = _executor(
        {"Arbitrum Sepolia": destination},
        IrisAttestationClient(transport=httpx.MockTransport(handler)),
        attestation_poll_interval_seconds=0.05,
        attestation_timeout_seconds=0.5,
    )

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    started = time.monotonic()
    record = asyncio.run(scenario())
    elapsed = time.monotonic() - started

    assert record.status is TransferStatus.FAILED
    assert record.last_error is not None
    assert "not complete" in record.last_error
    assert 0.45 <= elapsed < 1.5
    assert destination.submissions == []


def test_completed_record_is_not_relayed_again() -> None:
    destination = FakeGateway(minted=1_000_000)
    attestation_client = StubAttestationClient()
    executor, store = _executor({"Arbitrum Sepolia": destination}, attestation_client)

    async def scenario() -> tuple[TransferRecord, TransferRecord]:
        await store.claim(_record())
        first = await executor.execute(TransferOperation.START_JOB, "0xburn")
        second = await executor.execute(TransferOperation.START_JOB, "0xburn")
        return first, second

    first, second = asyncio.run(scenario())

    assert first.status is TransferStatus.COMPLETED
    assert second.completion_tx_hash == first.completion_tx_hash
    assert len(destination.submissions) == 1
    assert len(attestation_client.calls) == 1


def test_resume_with_stored_attestation_skips_polling() -> None:
    destination = FakeGateway(minted=1_000_000)
    attestation_client = StubAttestationClient()
    executor, store = _executor({"Arbitrum Sepolia": destination}, attestation_client)

    async def scenario() -> TransferRecord:
        claim = await store.claim(_record())
        record = claim.record
        record.status = TransferStatus.POLLING_ATTESTATION
        record.step = TransferStep.EXECUTING_RECEIVE.value
        record.burn_tx_hash = "0xburn"
        record.attestation_message = "0xaa"
        record.attestation_signature = "0xbb"
        await store.upsert(record)
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.COMPLETED
    assert attestation_client.calls == []
    assert destination.submissions[0][2] == (b"\xaa", b"\xbb")


def test_release_payment_discovers_burn_on_native_chain() -> None:
    native = FakeGateway(
        tip=5_000,
        events=[
            ChainEvent(
                name="PaymentReleased",
                tx_hash="0xother",
                block_number=4_500,
                log_index=0,
                args={"jobId": "40232-99", "amount": 1, "milestone": 1},
            ),
            ChainEvent(
                name="PaymentReleased",
                tx_hash="0xnativeburn",
                block_number=4_900,
                log_index=3,
                args={
                    "jobId": "40232-3",
                    "applicant": RECIPIENT,
                    "amount": 2_000_000,
                    "milestone": 2,
                },
            ),
        ],
    )
    local = FakeGateway(minted=1_980_000)
    attestation_client = StubAttestationClient(
        Attestation(message="0x01", attestation="0x02", mint_recipient=RECIPIENT, amount=2_000_000)
    )
    executor, store = _executor(
        {"Arbitrum Sepolia": native, "OP Sepolia": local},
        attestation_client,
    )

    async def scenario() -> TransferRecord:
        await store.claim(_record(TransferOperation.RELEASE_PAYMENT, "40232-3", "0xlocaltx"))
        return await executor.execute(TransferOperation.RELEASE_PAYMENT, "0xlocaltx")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.COMPLETED
    assert record.burn_tx_hash == "0xnativeburn"
    assert record.source_chain == "Arbitrum Sepolia"
    assert attestation_client.calls == [(3, "0xnativeburn")]
    assert local.submissions[0][:2] == (OP_SEPOLIA.receiver_address, "receiveMessage")
    assert native.submissions == []


def test_release_payment_without_event_fails_as_not_found() -> None:
    native = FakeGateway(tip=5_000)
    executor, store = _executor(
        {"Arbitrum Sepolia": native, "OP Sepolia": FakeGateway()},
        StubAttestationClient(),
    )

    async def scenario() -> TransferRecord:
        await store.claim(_record(TransferOperation.RELEASE_PAYMENT, "40232-4", "0xlocal"))
        return await executor.execute(TransferOperation.RELEASE_PAYMENT, "0xlocal")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.FAILED
    assert record.last_error is not None
    assert "PaymentReleased not found" in record.last_error


def test_transient_submission_errors_are_retried() -> None:
    destination = FakeGateway(
        [TransientProviderError("receipt not mined"), _confirmed("0x5econd")],
        minted=1_000_000,
    )
    executor, store = _executor({"Arbitrum Sepolia": destination}, StubAttestationClient())

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.COMPLETED
    assert record.completion_tx_hash == "0x5econd"
    assert len(destination.submissions) == 2


def test_missing_destination_gateway_fails_the_record() -> None:
    executor, store = _executor({}, StubAttestationClient())

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.FAILED
    assert record.last_error is not None
    assert "Arbitrum Sepolia" in record.last_error


def test_cancelled_relay_leaves_record_active() -> None:
    class CancelledAttestationClient(StubAttestationClient):
        async def poll(self, *args: Any, **kwargs: Any) -> Attestation:
            raise RelayCancelledError("Attestation polling cancelled.")

    executor, store = _executor({"Arbitrum Sepolia": FakeGateway()}, CancelledAttestationClient())

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        with pytest.raises(RelayCancelledError):
            await executor.execute(TransferOperation.START_JOB, "0xburn")
        return await store.get_record(TransferOperation.START_JOB, "0xburn")

    record = asyncio.run(scenario())

    assert record.status is TransferStatus.POLLING_ATTESTATION
    assert record.last_error is None


def test_payment_log_follows_the_relay_outcome(tmp_path: Path) -> None:
    payment_log = JsonFilePaymentLog(tmp_path / "payment-log.json")
    payment_log.record_event("40232-1", "startJob", "0xburn", chain="OP Sepolia")

    class FailingAttestationClient(StubAttestationClient):
        async def poll(self, *args: Any, **kwargs: Any) -> Attestation:
            raise AttestationTimeoutError("Attestation for 0xburn not complete after 1s.")

    executor, store = _executor(
        {"Arbitrum Sepolia": FakeGateway()},
        FailingAttestationClient(),
        recovery_log=payment_log,
    )

    async def scenario() -> TransferRecord:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn")

    asyncio.run(scenario())
    pending = payment_log.pending_recovery()

    assert len(pending) == 1
    assert pending[0].status == "failed"
    assert pending[0].error is not None
    assert "not complete" in pending[0].error


def test_payment_log_is_written_off_the_event_loop() -> None:
    class ThreadRecordingLog:
        def __init__(self) -> None:
            self.threads: list[int] = []

        def record_event(self, *args: Any, **kwargs: Any) -> None:
            self.threads.append(threading.get_ident())

        def update_event_status(self, *args: Any, **kwargs: Any) -> None:
            self.threads.append(threading.get_ident())

        def pending_recovery(self) -> list[Any]:
            return []

    payment_log = ThreadRecordingLog()
    executor, store = _executor(
        {"Arbitrum Sepolia": FakeGateway(minted=1_000_000)},
        StubAttestationClient(),
        recovery_log=payment_log,
    )

    async def scenario() -> tuple[TransferRecord, int]:
        await store.claim(_record())
        return await executor.execute(TransferOperation.START_JOB, "0xburn"), threading.get_ident()

    record, loop_thread = asyncio.run(scenario())

    assert record.status is TransferStatus.COMPLETED
    assert len(payment_log.threads) == 1
    assert loop_thread not in payment_log.threads
