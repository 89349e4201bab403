"""Repository implementations."""

from cctp_payment_relay.infrastructure.repositories.cached_transfer_status_store import (
    CachedTransferStatusStore,
)
from cctp_payment_relay.infrastructure.repositories.in_memory_transfer_repository import (
    InMemoryTransferRepository,
)
from cctp_payment_relay.infrastructure.repositories.postgres_transfer_repository import (
    PostgresTransferRepository,
)

__all__ = [
    "CachedTransferStatusStore",
    "InMemoryTransferRepository",
    "PostgresTransferRepository",
]
