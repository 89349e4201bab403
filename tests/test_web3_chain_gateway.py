from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from cctp_payment_relay.domain.chain_models import (
    RevertKind,
    SubmissionOutcome,
    classify_revert,
)
from cctp_payment_relay.domain.chains import ChainProfile
from cctp_payment_relay.domain.errors import TransientProviderError
from cctp_payment_relay.infrastructure.chains import (
    Web3ChainGateway,
    buffered_gas_limit,
    matches_filters,
    resolve_filters,
)
from cctp_payment_relay.infrastructure.chains.abi import event_abi, event_signature

# Well-known development key; never funded outside local test chains.
PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
RELAYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
RECEIVER = "0x959d0fc6dD8efCf764BD3B0bbaC191F2D7Dd03f1"
CHAIN = ChainProfile(name="Arbitrum Sepolia", chain_id=421614, cctp_domain=3)


class FakeCall:
    def __init__(self, eth: FakeEth) -> None:
        self._eth = eth

    async def estimate_gas(self, params: dict[str, Any]) -> int:
        self._eth.estimates.append(params)
        if self._eth.estimate_error is not None:
            raise self._eth.estimate_error
        return 100_000

    async def build_transaction(self, params: dict[str, Any]) -> dict[str, Any]:
        tx = {key: value for key, value in params.items() if key != "from"}
        return {
            **tx,
            "to": Web3.to_checksum_address(RECEIVER),
            "data": "0x1234",
            "gasPrice": 1_000_000_000,
        }


class FakeEvent:
    def process_log(self, log: dict[str, Any]) -> dict[str, Any]:
        return log


class FakeEth:
    def __init__(self) -> None:
        self.estimate_error: Exception | None = None
        self.receipt_status = 1
        self.receipt_error: Exception | None = None
        self.replay_error: Exception | None = None
        self.estimates: list[dict[str, Any]] = []
        self.sent: list[bytes] = []
        self.logs: list[dict[str, Any]] = []
        self.log_queries: list[tuple[int, int]] = []

    def contract(self, address: str, abi: list[dict[str, Any]]) -> Any:
        call = FakeCall(self)
        return SimpleNamespace(
            functions=SimpleNamespace(receive=lambda *args: call),
            events=SimpleNamespace(PaymentReleased=FakeEvent),
        )

    async def get_logs(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.log_queries.append((params["fromBlock"], params["toBlock"]))
        return [
            log
            for log in self.logs
            if params["fromBlock"] <= log["blockNumber"] <= params["toBlock"]
        ]

    async def get_transaction_count(self, address: str, block: str) -> int:
        return 7

    async def send_raw_transaction(self, raw: bytes) -> bytes:
        self.sent.append(bytes(raw))
        return bytes.fromhex("ab" * 32)

    async def wait_for_transaction_receipt(self, tx_hash: bytes, timeout: float) -> dict[str, int]:
        if self.receipt_error is not None:
            raise self.receipt_error
        return {"blockNumber": 77, "gasUsed": 90_000, "status": self.receipt_status}

    async def call(self, params: dict[str, Any], block_identifier: int) -> bytes:
        if self.replay_error is not None:
            raise self.replay_error
        return b""


def _gateway(chain: ChainProfile = CHAIN) -> tuple[Web3ChainGateway, FakeEth]:
    eth = FakeEth()
    gateway = Web3ChainGateway(
        chain,
        "http://localhost:8545",
        private_key=PRIVATE_KEY,
        web3=SimpleNamespace(eth=eth),  # type: ignore[arg-type]
    )
    return gateway, eth


def _release_log(job_id: str, block_number: int) -> dict[str, Any]:
    return {
        "args": {"jobId": Web3.keccak(text=job_id), "amount": 1_000_000},
        "transactionHash": bytes([block_number]) * 32,
        "blockNumber": block_number,
        "logIndex": 0,
    }


def _submit(gateway: Web3ChainGateway) -> Any:
    return asyncio.run(gateway.submit(RECEIVER, "receive", (b"\x01", b"\x02")))


def test_gas_buffer_rounds_up() -> None:
    assert buffered_gas_limit(100_000, 30) == 130_000
    assert buffered_gas_limit(100_001, 30) == 130_002
    assert buffered_gas_limit(21_000, 0) == 21_000


def test_indexed_string_filter_compares_keccak_hash() -> None:
    args = {"jobId": Web3.keccak(text="40232-7"), "amount": 5}

    assert matches_filters(args, {"jobId": "40232-7"})
    assert not matches_filters(args, {"jobId": "40232-8"})
    assert matches_filters(args, {"jobId": Web3.to_hex(Web3.keccak(text="40232-7"))})


def test_plain_filters_compare_addresses_case_insensitively() -> None:
    args = {"applicant": RELAYER, "amount": 5}

    assert matches_filters(args, {"applicant": RELAYER.lower(), "amount": 5})
    assert not matches_filters(args, {"amount": 6})
    assert not matches_filters(args, {"milestone": 1})


def test_candidate_set_filter_reports_the_matching_job_id() -> None:
    args = {"jobId": Web3.keccak(text="40232-7"), "amount": 5}

    resolved = resolve_filters(args, {"jobId": frozenset({"40232-6", "40232-7"})})

    assert resolved == {"jobId": "40232-7", "amount": 5}
    assert resolve_filters(args, {"jobId": frozenset()}) is None
    assert resolve_filters(args, {"jobId": frozenset({"40232-8"})}) is None


def test_scan_events_walks_chunks_without_overlap() -> None:
    chain = ChainProfile(
        name="Arbitrum Sepolia",
        chain_id=421614,
        cctp_domain=3,
        scan_chunk_blocks=10,
    )
    gateway, eth = _gateway(chain)
    eth.logs = [
        _release_log("40232-8", 9),
        _release_log("40232-7", 10),
        _release_log("40232-7", 19),
        _release_log("40232-7", 25),
    ]

    async def scenario() -> list[Any]:
        return [
            event
            async for event in gateway.scan_events(
                RECEIVER,
                "PaymentReleased",
                0,
                25,
                {"jobId": "40232-7"},
            )
        ]

    events = asyncio.run(scenario())

    assert eth.log_queries == [(0, 9), (10, 19), (20, 25)]
    assert [event.block_number for event in events] == [10, 19, 25]
    assert {event.args["jobId"] for event in events} == {"40232-7"}
    assert events[0].tx_hash == Web3.to_hex(bytes([10]) * 32)
    assert events[0].name == "PaymentReleased"


def test_scan_events_without_filters_reports_raw_topic_hash() -> None:
    gateway, eth = _gateway()
    eth.logs = [_release_log("40232-7", 5)]

    async def scenario() -> list[Any]:
        return [event async for event in gateway.scan_events(RECEIVER, "PaymentReleased", 5, 5)]

    events = asyncio.run(scenario())

    assert len(events) == 1
    assert events[0].args["jobId"] == Web3.to_hex(Web3.keccak(text="40232-7"))
    assert eth.log_queries == [(5, 5)]


def test_revert_classification_recognizes_replay_protection() -> None:
    assert classify_revert("execution reverted: Nonce already used") is RevertKind.ALREADY_COMPLETED
    assert classify_revert("Message already received") is RevertKind.ALREADY_COMPLETED
    assert classify_revert("Invalid attestation length") is RevertKind.GENERIC_REVERT
    assert classify_revert(None) is RevertKind.GENERIC_REVERT
    assert classify_revert("custom: done", ["DONE"]) is RevertKind.ALREADY_COMPLETED


def test_event_signatures_match_job_contract_events() -> None:
    assert event_signature(event_abi("JobStarted")) == "JobStarted(string,uint256,address,bool)"
    assert (
        event_signature(event_abi("PaymentReleased"))
        == "PaymentReleased(string,address,address,uint256,uint256)"
    )


def test_relayer_address_derives_from_key() -> None:
    gateway, _ = _gateway()

    assert gateway.relayer_address == RELAYER


def test_confirmed_submission_uses_buffered_gas() -> None:
    gateway, eth = _gateway()

    receipt = _submit(gateway)

    assert receipt.outcome is SubmissionOutcome.CONFIRMED
    assert receipt.tx_hash == "0x" + "ab" * 32
    assert receipt.block_number == 77
    assert receipt.gas_used == 90_000
    assert eth.estimates == [{"from": RELAYER, "value": 0}]
    assert len(eth.sent) == 1


def test_replay_protected_estimate_short_circuits_without_sending() -> None:
    gateway, eth = _gateway()
    eth.estimate_error = ContractLogicError("execution reverted: Nonce already used")

    receipt = _submit(gateway)

    assert receipt.outcome is SubmissionOutcome.ALREADY_COMPLETED
    assert receipt.revert_kind is RevertKind.ALREADY_COMPLETED
    assert receipt.tx_hash is None
    assert eth.sent == []


def test_other_estimate_revert_falls_back_and_reports_replayed_reason() -> None:
    gateway, eth = _gateway()
    eth.estimate_error = ContractLogicError("execution reverted: gas required exceeds allowance")
    eth.receipt_status = 0
    eth.replay_error = ContractLogicError("execution reverted: Invalid attestation length")

    receipt = _submit(gateway)

    assert receipt.outcome is SubmissionOutcome.REVERTED
    assert receipt.revert_kind is RevertKind.GENERIC_REVERT
    assert receipt.revert_reason is not None
    assert "Invalid attestation length" in receipt.revert_reason
    assert receipt.tx_hash == "0x" + "ab" * 32
    assert len(eth.sent) == 1


def test_mined_replay_revert_counts_as_already_completed() -> None:
    gateway, eth = _gateway()
    eth.receipt_status = 0
    eth.replay_error = ContractLogicError("execution reverted: Nonce already used")

    receipt = _submit(gateway)

    assert receipt.outcome is SubmissionOutcome.ALREADY_COMPLETED
    assert receipt.block_number == 77


def test_receipt_timeout_is_transient() -> None:
    gateway, eth = _gateway()
    eth.receipt_error = TimeExhausted("not mined")

    with pytest.raises(TransientProviderError, match="not mined within"):
        _submit(gateway)
