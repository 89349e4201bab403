from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Collection, Mapping, Sequence
from typing import Any

import pytest

from cctp_payment_relay.application.services import PaymentReleaseListener, RelayService
from cctp_payment_relay.domain.api_models import StartJobRequest
from cctp_payment_relay.domain.chain_models import ChainEvent
from cctp_payment_relay.domain.chains import ChainDirectory, ChainProfile
from cctp_payment_relay.domain.entities import TransferRecord
from cctp_payment_relay.domain.errors import (
    RelayConfigurationError,
    TransferValidationError,
    TransientProviderError,
)
from cctp_payment_relay.domain.ports import TransferStatusStore
from cctp_payment_relay.domain.transfer_types import TransferOperation, TransferStatus
from cctp_payment_relay.infrastructure.repositories import (
    CachedTransferStatusStore,
    InMemoryTransferRepository,
)

JOB_CONTRACT = "0x39158a9F92faB84561205B05223929eFF131455e"
CHAINS = ChainDirectory(
    [
        ChainProfile(name="OP Sepolia", chain_id=11155420, cctp_domain=2, layerzero_eid=40232),
        ChainProfile(name="Arbitrum Sepolia", chain_id=421614, cctp_domain=3, layerzero_eid=40231),
    ],
    native_chain="Arbitrum Sepolia",
)


class ReleaseGateway:
    """Native chain double; later tips repeat the last one and job filters accept sets."""

    def __init__(
        self,
        tips: Sequence[int | Exception],
        events: Sequence[ChainEvent] = (),
    ) -> None:
        self.tips = list(tips)
        self.events = list(events)
        self.scans: list[tuple[int, int, frozenset[str]]] = []

    async def block_number(self) -> int:
        tip = self.tips.pop(0) if len(self.tips) > 1 else self.tips[0]
        if isinstance(tip, Exception):
            raise tip
        return tip

    async def scan_events(
        self,
        contract_address: str,
        event_name: str,
        from_block: int,
        to_block: int,
        argument_filters: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChainEvent]:
        job_ids = frozenset((argument_filters or {}).get("jobId", ()))
        self.scans.append((from_block, to_block, job_ids))
        for event in self.events:
            if event.name != event_name or not from_block <= event.block_number <= to_block:
                continue
            if event.args["jobId"] in job_ids:
                yield event


class CompletingRelayer:
    def __init__(self, store: TransferStatusStore) -> None:
        self._store = store
        self.records: list[TransferRecord] = []

    async def execute(
        self,
        operation: TransferOperation,
        source_tx_hash: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> TransferRecord:
        record = await self._store.get_record(operation, source_tx_hash)
        self.records.append(record)
        record.status = TransferStatus.COMPLETED
        record.completion_tx_hash = "0xdone"
        return await self._store.upsert(record)


async def _drain(service: RelayService) -> None:
    for _ in range(200):
        if service.in_flight == 0:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("relay tasks did not finish")


def _release(block_number: int, job_id: str) -> ChainEvent:
    return ChainEvent(
        name="PaymentReleased",
        tx_hash=f"0x{block_number:064x}",
        block_number=block_number,
        log_index=0,
        args={"jobId": job_id, "amount": 1_000_000},
    )


def _listener(
    gateway: ReleaseGateway,
    poll_interval_seconds: float = 60.0,
) -> PaymentReleaseListener:
    return PaymentReleaseListener(
        gateway,
        JOB_CONTRACT,
        chain_name="Arbitrum Sepolia",
        poll_interval_seconds=poll_interval_seconds,
    )


def _tracked(*job_ids: str) -> Any:
    async def job_id_source() -> Collection[str]:
        return set(job_ids)

    return job_id_source


def test_poll_hands_over_releases_of_tracked_jobs_after_the_anchor() -> None:
    gateway = ReleaseGateway(
        [100, 105],
        [_release(99, "40232-1"), _release(103, "40232-1"), _release(104, "40232-9")],
    )
    listener = _listener(gateway)
    released: list[tuple[str, str]] = []

    async def on_release(job_id: str, tx_hash: str) -> None:
        released.append((job_id, tx_hash))

    async def scenario() -> int:
        await listener.start(on_release, _tracked("40232-1"))
        try:
            return await listener.poll_once()
        finally:
            await listener.stop()

    handled = asyncio.run(scenario())

    assert handled == 1
    assert released == [("40232-1", f"0x{103:064x}")]
    assert [scan[:2] for scan in gateway.scans] == [(101, 105)]
    assert listener.last_block == 105


def test_poll_skips_scans_without_new_blocks_or_tracked_jobs() -> None:
    gateway = ReleaseGateway([100, 100, 110])
    listener = _listener(gateway)

    async def on_release(job_id: str, tx_hash: str) -> None:
        raise AssertionError("no release expected")

    async def scenario() -> list[int]:
        await listener.start(on_release, _tracked())
        try:
            return [await listener.poll_once(), await listener.poll_once()]
        finally:
            await listener.stop()

    assert asyncio.run(scenario()) == [0, 0]
    assert gateway.scans == []
    assert listener.last_block == 110


def test_rejected_release_does_not_stop_the_pass() -> None:
    gateway = ReleaseGateway([0, 10], [_release(3, "40232-1"), _release(4, "40232-2")])
    listener = _listener(gateway)
    released: list[str] = []

    async def on_release(job_id: str, tx_hash: str) -> None:
        if job_id == "40232-1":
            raise TransferValidationError("unknown chain")
        released.append(job_id)

    async def scenario() -> int:
        await listener.start(on_release, _tracked("40232-1", "40232-2"))
        try:
            return await listener.poll_once()
        finally:
            await listener.stop()

    assert asyncio.run(scenario()) == 1
    assert released == ["40232-2"]


def test_start_and_stop_are_idempotent() -> None:
    gateway = ReleaseGateway([100])
    listener = _listener(gateway)

    async def on_release(job_id: str, tx_hash: str) -> None:
        return None

    async def scenario() -> list[bool]:
        results = [
            await listener.start(on_release, _tracked()),
            await listener.start(on_release, _tracked()),
            listener.active,
            await listener.stop(),
            await listener.stop(),
            listener.active,
        ]
        return results

    assert asyncio.run(scenario()) == [True, False, True, True, False, False]


def test_background_loop_survives_provider_errors() -> None:
    gateway = ReleaseGateway(
        [100, TransientProviderError("rpc down"), 102],
        [_release(101, "40232-1")],
    )
    listener = _listener(gateway, poll_interval_seconds=0.01)
    released: list[str] = []

    async def on_release(job_id: str, tx_hash: str) -> None:
        released.append(job_id)

    async def scenario() -> None:
        await listener.start(on_release, _tracked("40232-1"))
        try:
            for _ in range(200):
                if released:
                    return
                await asyncio.sleep(0.01)
        finally:
            await listener.stop()

    asyncio.run(scenario())

    assert released == ["40232-1"]


def test_listener_releases_are_relayed_with_the_event_as_burn() -> None:
    async def scenario() -> tuple[RelayService, CompletingRelayer]:
        repository = InMemoryTransferRepository()
        store = CachedTransferStatusStore(repository)
        relayer = CompletingRelayer(store)
        gateway = ReleaseGateway([100, 120], [_release(110, "40232-5")])
        service = RelayService(
            store,
            relayer,
            CHAINS,
            release_listener=_listener(gateway),
            job_contract_address=JOB_CONTRACT,
        )
        await service.startup()
        await service.start_job(StartJobRequest(jobId="40232-5", txHash="0xstart"))
        await _drain(service)
        started = await service.start_listener()
        assert started.message == "Event listener started"
        assert (await service.start_listener()).message == "Event listener already active"

        assert service._release_listener is not None
        await service._release_listener.poll_once()
        await _drain(service)
        stats = service.stats()
        health = service.health()
        await service.shutdown()

        assert stats.event_listener_active is True
        assert stats.processing_jobs == []
        assert [item.status_key for item in stats.recent_completions] == [
            f"40232-5-0x{110:064x}",
            "40232-5",
        ]
        assert health.completed_jobs == 2
        assert health.event_listener_active is True
        assert not service.listener_active
        return service, relayer

    _, relayer = asyncio.run(scenario())
    release = relayer.records[-1]

    assert release.operation is TransferOperation.RELEASE_PAYMENT
    assert release.source_tx_hash == f"0x{110:064x}"
    assert release.burn_tx_hash == release.source_tx_hash
    assert release.source_chain == "Arbitrum Sepolia"
    assert release.destination_chain == "OP Sepolia"


def test_listener_control_without_native_gateway() -> None:
    store = CachedTransferStatusStore(InMemoryTransferRepository())
    service = RelayService(store, CompletingRelayer(store), CHAINS)

    async def scenario() -> str:
        stopped = await service.stop_listener()
        with pytest.raises(RelayConfigurationError):
            await service.start_listener()
        return stopped.message

    assert asyncio.run(scenario()) == "Event listener not active"
