"""Chain profiles and job-to-chain routing."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from cctp_payment_relay.domain.errors import RelayConfigurationError, TransferValidationError
from cctp_payment_relay.domain.transfer_types import TransferOperation

RECEIVE_MESSAGE_FUNCTION = "receiveMessage"
TRANSCEIVER_RECEIVE_FUNCTION = "receive"


@dataclass(slots=True, frozen=True)
class ChainProfile:
    """Static description of one chain the relay talks to."""

    name: str
    chain_id: int
    cctp_domain: int
    layerzero_eid: int | None = None
    receiver_address: str | None = None
    receive_function: str = RECEIVE_MESSAGE_FUNCTION
    usdc_address: str | None = None
    scan_chunk_blocks: int = 1000
    search_window_blocks: int = 1000
    reanchor_lag_blocks: int = 5000


@dataclass(slots=True, frozen=True)
class TransferRoute:
    """Attestation source and mint destination of one transfer."""

    source: ChainProfile
    destination: ChainProfile


# Operations that move funds from a job's local chain to the native chain.
_INBOUND_OPERATIONS = frozenset({TransferOperation.START_JOB, TransferOperation.LOCK_MILESTONE})


class ChainDirectory:
    """Resolves chains by name and routes job operations.

    Job ids have the form `<layerZeroEid>-<jobNumber>`; the prefix selects
    the chain the job lives on. Jobs without a known prefix fall back to
    `default_local_chain` when one is configured.
    """

    def __init__(
        self,
        chains: Iterable[ChainProfile],
        native_chain: str,
        default_local_chain: str | None = None,
    ) -> None:
        self._by_name: dict[str, ChainProfile] = {}
        self._by_eid: dict[int, ChainProfile] = {}
        for chain in chains:
            if chain.name in self._by_name:
                raise RelayConfigurationError(f"Duplicate chain name '{chain.name}'.")
            self._by_name[chain.name] = chain
            if chain.layerzero_eid is not None:
                self._by_eid[chain.layerzero_eid] = chain

        if native_chain not in self._by_name:
            raise RelayConfigurationError(f"Native chain '{native_chain}' is not configured.")
        if default_local_chain is not None and default_local_chain not in self._by_name:
            raise RelayConfigurationError(
                f"Default local chain '{default_local_chain}' is not configured."
            )
        self._native = self._by_name[native_chain]
        self._default_local = (
            None if default_local_chain is None else self._by_name[default_local_chain]
        )

    @property
    def native(self) -> ChainProfile:
        return self._native

    @property
    def chains(self) -> list[ChainProfile]:
        return list(self._by_name.values())

    def get(self, name: str) -> ChainProfile:
        """Return a chain by name."""

        chain = self._by_name.get(name)
        if chain is None:
            raise RelayConfigurationError(f"Chain '{name}' is not configured.")
        return chain

    def local_chain_for_job(self, job_id: str) -> ChainProfile:
        """Chain a job was created on, derived from its id prefix."""

        prefix = job_id.strip().split("-", 1)[0]
        if prefix.isdigit():
            chain = self._by_eid.get(int(prefix))
            if chain is not None:
                return chain
        if self._default_local is not None:
            return self._default_local
        raise TransferValidationError(
            f"Cannot resolve the chain for job '{job_id}'; expected '<eid>-<jobNumber>'."
        )

    def route_for(self, operation: TransferOperation, job_id: str) -> TransferRoute:
        """Direction of the transfer for one operation on one job."""

        local = self.local_chain_for_job(job_id)
        if operation in _INBOUND_OPERATIONS:
            return TransferRoute(source=local, destination=self._native)
        return TransferRoute(source=self._native, destination=local)


__all__ = [
    "ChainDirectory",
    "ChainProfile",
    "RECEIVE_MESSAGE_FUNCTION",
    "TRANSCEIVER_RECEIVE_FUNCTION",
    "TransferRoute",
]
