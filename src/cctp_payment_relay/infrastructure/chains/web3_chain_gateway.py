"""Chain gateway backed by an async web3 provider."""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Mapping, Sequence
from typing import Any, TypeVar

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, Web3
from web3.exceptions import (
    BadResponseFormat,
    ContractLogicError,
    ProviderConnectionError,
    TimeExhausted,
    Web3RPCError,
)

from cctp_payment_relay.domain.chain_models import (
    DEFAULT_ALREADY_COMPLETED_MARKERS,
    ChainEvent,
    RevertKind,
    SubmissionOutcome,
    SubmissionReceipt,
    classify_revert,
)
from cctp_payment_relay.domain.chains import ChainProfile
from cctp_payment_relay.domain.errors import TransientProviderError
from cctp_payment_relay.domain.ports import ChainGateway
from cctp_payment_relay.infrastructure.chains.abi import RELAY_ABI, event_abi, event_signature

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_ERRORS = (
    aiohttp.ClientError,
    BadResponseFormat,
    ProviderConnectionError,
    Web3RPCError,
    TimeoutError,
    OSError,
)


def buffered_gas_limit(estimate: int, buffer_percent: float) -> int:
    """Gas estimate raised by a percentage buffer."""

    return int(math.ceil(estimate * (100 + buffer_percent) / 100))


def _value_matches(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (bytes, bytearray)) and isinstance(expected, str):
        if expected.startswith("0x"):
            return Web3.to_hex(bytes(actual)).lower() == expected.lower()
        return bytes(actual) == Web3.keccak(text=expected)
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.lower() == expected.lower()
    return actual == expected


def resolve_filters(
    args: Mapping[str, Any],
    argument_filters: Mapping[str, Any],
) -> dict[str, Any] | None:
    """Decoded arguments with filtered values substituted, or None on mismatch.

    Indexed dynamic arguments such as `string jobId` only exist as a
    keccak hash in the log topics, so plain-text expectations are hashed
    before comparison. A set of expected values matches any member, and
    the member that matched replaces the raw argument.
    """

    resolved = dict(args)
    for name, expected in argument_filters.items():
        candidates = expected if isinstance(expected, (set, frozenset)) else (expected,)
        actual = args.get(name)
        for candidate in candidates:
            if _value_matches(actual, candidate):
                resolved[name] = candidate
                break
        else:
            return None
    return resolved


def matches_filters(args: Mapping[str, Any], argument_filters: Mapping[str, Any]) -> bool:
    """Whether decoded event arguments satisfy every filter."""

    return resolve_filters(args, argument_filters) is not None


class Web3ChainGateway(ChainGateway):
    """Scans logs and submits signed transactions on one EVM chain."""

    def __init__(
        self,
        chain: ChainProfile,
        rpc_url: str,
        *,
        private_key: str,
        gas_buffer_percent: float = 30.0,
        fallback_gas_limit: int = 300_000,
        receipt_timeout_seconds: float = 120.0,
        rpc_retry_attempts: int = 3,
        rpc_retry_base_delay_seconds: float = 0.5,
        already_completed_markers: Iterable[str] = DEFAULT_ALREADY_COMPLETED_MARKERS,
        web3: AsyncWeb3 | None = None,
    ) -> None:
        self._chain = chain
        self._w3 = web3 if web3 is not None else AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._account = Account.from_key(private_key)
        self._gas_buffer_percent = max(gas_buffer_percent, 0.0)
        self._fallback_gas_limit = fallback_gas_limit
        self._receipt_timeout_seconds = receipt_timeout_seconds
        self._rpc_retry_attempts = max(rpc_retry_attempts, 1)
        self._rpc_retry_base_delay_seconds = max(rpc_retry_base_delay_seconds, 0.0)
        self._already_completed_markers = tuple(already_completed_markers)
        self._send_lock = asyncio.Lock()

    @property
    def chain(self) -> ChainProfile:
        return self._chain

    @property
    def relayer_address(self) -> str:
        return str(self._account.address)

    async def block_number(self) -> int:
        """Current chain tip."""

        return await self._call_with_retry("eth_blockNumber", lambda: self._w3.eth.block_number)

    async def scan_events(
        self,
        contract_address: str,
        event_name: str,
        from_block: int,
        to_block: int,
        argument_filters: Mapping[str, Any] | None = None,
    ) -> AsyncIterator[ChainEvent]:
        """Yield matching events from `from_block` to `to_block` in chunks."""

        contract = self._contract(contract_address)
        event = getattr(contract.events, event_name)()
        topic = Web3.to_hex(Web3.keccak(text=event_signature(event_abi(event_name))))
        address = Web3.to_checksum_address(contract_address)
        chunk = max(self._chain.scan_chunk_blocks, 1)

        start = max(from_block, 0)
        while start <= to_block:
            end = min(start + chunk - 1, to_block)
            logs = await self._call_with_retry(
                "eth_getLogs",
                lambda: self._w3.eth.get_logs(
                    {"address": address, "fromBlock": start, "toBlock": end, "topics": [topic]}
                ),
            )
            for log in logs:
                decoded = event.process_log(log)
                args = dict(decoded["args"])
                if argument_filters:
                    resolved = resolve_filters(args, argument_filters)
                    if resolved is None:
                        continue
                    args = resolved
                yield ChainEvent(
                    name=event_name,
                    tx_hash=Web3.to_hex(decoded["transactionHash"]),
                    block_number=int(decoded["blockNumber"]),
                    log_index=int(decoded["logIndex"]),
                    args={name: _plain_value(value) for name, value in args.items()},
                )
            start = end + 1

    async def submit(
        self,
        contract_address: str,
        function_name: str,
        args: Sequence[Any],
        value_wei: int = 0,
    ) -> SubmissionReceipt:
        """Estimate, sign, send and wait for one transaction."""

        contract = self._contract(contract_address)
        call = getattr(contract.functions, function_name)(*args)
        sender = self._account.address

        try:
            estimate = await call.estimate_gas({"from": sender, "value": value_wei})
        except ContractLogicError as exc:
            reason = _revert_message(exc)
            if classify_revert(reason, self._already_completed_markers) is (
                RevertKind.ALREADY_COMPLETED
            ):
                logger.info(
                    "%s.%s on %s already executed by another relayer: %s",
                    contract_address,
                    function_name,
                    self._chain.name,
                    reason,
                )
                return SubmissionReceipt(
                    outcome=SubmissionOutcome.ALREADY_COMPLETED,
                    revert_kind=RevertKind.ALREADY_COMPLETED,
                    revert_reason=reason,
                )
            logger.warning(
                "Gas estimation reverted on %s (%s); using fallback gas limit %s.",
                self._chain.name,
                reason,
                self._fallback_gas_limit,
            )
            gas_limit = self._fallback_gas_limit
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "Gas estimation failed on %s (%s); using fallback gas limit %s.",
                self._chain.name,
                exc,
                self._fallback_gas_limit,
            )
            gas_limit = self._fallback_gas_limit
        else:
            gas_limit = buffered_gas_limit(estimate, self._gas_buffer_percent)

        async with self._send_lock:
            nonce = await self._call_with_retry(
                "eth_getTransactionCount",
                lambda: self._w3.eth.get_transaction_count(sender, "pending"),
            )
            tx = await self._call_with_retry(
                "build_transaction",
                lambda: call.build_transaction(
                    {
                        "from": sender,
                        "nonce": nonce,
                        "gas": gas_limit,
                        "value": value_wei,
                        "chainId": self._chain.chain_id,
                    }
                ),
            )
            signed = self._account.sign_transaction(tx)
            try:
                tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
            except ContractLogicError as exc:
                return self._reverted_receipt(None, None, None, _revert_message(exc))
            except _TRANSIENT_ERRORS as exc:
                raise TransientProviderError(
                    f"Sending {function_name} on {self._chain.name} failed: {exc}"
                ) from exc

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info(
            "Submitted %s on %s as %s (gas limit %s).",
            function_name,
            self._chain.name,
            tx_hash_hex,
            gas_limit,
        )
        try:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash,
                timeout=self._receipt_timeout_seconds,
            )
        except TimeExhausted as exc:
            raise TransientProviderError(
                f"Transaction {tx_hash_hex} on {self._chain.name} not mined within "
                f"{self._receipt_timeout_seconds:g}s."
            ) from exc

        block_number = int(receipt["blockNumber"])
        gas_used = int(receipt["gasUsed"])
        if int(receipt["status"]) == 1:
            return SubmissionReceipt(
                outcome=SubmissionOutcome.CONFIRMED,
                tx_hash=tx_hash_hex,
                block_number=block_number,
                gas_used=gas_used,
            )

        reason = await self._replay_revert_reason(
            {"from": sender, "to": tx["to"], "data": tx["data"], "value": value_wei},
            block_number,
        )
        return self._reverted_receipt(tx_hash_hex, block_number, gas_used, reason)

    async def token_balance(self, token_address: str, owner: str) -> int:
        """ERC-20 balance of `owner`."""

        contract = self._contract(token_address)
        checksum_owner = Web3.to_checksum_address(owner)
        balance = await self._call_with_retry(
            "balanceOf",
            lambda: contract.functions.balanceOf(checksum_owner).call(),
        )
        return int(balance)

    async def signer_balance(self) -> int:
        """Native balance of the relayer account."""

        balance = await self._call_with_retry(
            "eth_getBalance",
            lambda: self._w3.eth.get_balance(self._account.address),
        )
        return int(balance)

    def _contract(self, address: str) -> Any:
        return self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=RELAY_ABI)

    def _reverted_receipt(
        self,
        tx_hash: str | None,
        block_number: int | None,
        gas_used: int | None,
        reason: str | None,
    ) -> SubmissionReceipt:
        kind = classify_revert(reason, self._already_completed_markers)
        outcome = (
            SubmissionOutcome.ALREADY_COMPLETED
            if kind is RevertKind.ALREADY_COMPLETED
            else SubmissionOutcome.REVERTED
        )
        return SubmissionReceipt(
            outcome=outcome,
            tx_hash=tx_hash,
            block_number=block_number,
            gas_used=gas_used,
            revert_kind=kind,
            revert_reason=reason,
        )

    async def _replay_revert_reason(
        self,
        call_params: dict[str, Any],
        block_number: int,
    ) -> str | None:
        try:
            await self._w3.eth.call(call_params, block_identifier=block_number)
        except ContractLogicError as exc:
            return _revert_message(exc)
        except _TRANSIENT_ERRORS as exc:
            logger.warning(
                "Could not replay reverted transaction on %s at block %s: %s",
                self._chain.name,
                block_number,
                exc,
            )
        return None

    async def _call_with_retry(self, label: str, factory: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await factory()
            except ContractLogicError:
                raise
            except _TRANSIENT_ERRORS as exc:
                if attempt >= self._rpc_retry_attempts:
                    raise TransientProviderError(
                        f"{label} on {self._chain.name} failed after {attempt} attempt(s): {exc}"
                    ) from exc
                delay = self._rpc_retry_base_delay_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s on %s failed (attempt %s/%s), retrying in %.2fs: %s",
                    label,
                    self._chain.name,
                    attempt,
                    self._rpc_retry_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)


def _revert_message(exc: ContractLogicError) -> str:
    message = exc.message if isinstance(exc.message, str) else None
    return message or str(exc)


def _plain_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    return value


__all__ = [
    "Web3ChainGateway",
    "buffered_gas_limit",
    "matches_filters",
    "resolve_filters",
]
