"""Infrastructure layer public API."""

from cctp_payment_relay.infrastructure.attestation import IrisAttestationClient
from cctp_payment_relay.infrastructure.chains import Web3ChainGateway
from cctp_payment_relay.infrastructure.recovery_log import JsonFilePaymentLog
from cctp_payment_relay.infrastructure.repositories import (
    CachedTransferStatusStore,
    InMemoryTransferRepository,
    PostgresTransferRepository,
)

__all__ = [
    "CachedTransferStatusStore",
    "InMemoryTransferRepository",
    "IrisAttestationClient",
    "JsonFilePaymentLog",
    "PostgresTransferRepository",
    "Web3ChainGateway",
]
