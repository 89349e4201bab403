"""Domain exceptions for cross-chain relay operations."""


class RelayError(Exception):
    """Base class for relay errors."""


class TransferNotFoundError(RelayError):
    """Raised when no transfer record matches a lookup."""


class TransferValidationError(RelayError):
    """Raised when request validation fails."""


class RelayConfigurationError(RelayError):
    """Raised when the relay cannot be wired or a route is not configured."""


class TransientProviderError(RelayError):
    """Raised when an RPC or HTTP provider fails in a retryable way."""


class EventNotFoundError(RelayError):
    """Raised when the authorizing source event does not appear in time."""


class AttestationTimeoutError(RelayError):
    """Raised when an attestation is not complete before the deadline."""


class DestinationRevertError(RelayError):
    """Raised when the destination call reverts for a genuine reason."""

    def __init__(self, reason: str, tx_hash: str | None = None) -> None:
        detail = reason if tx_hash is None else f"{reason} (tx {tx_hash})"
        super().__init__(f"Destination call reverted: {detail}")
        self.reason = reason
        self.tx_hash = tx_hash


class PostConditionError(RelayError):
    """Raised when the destination effect cannot be confirmed."""


class PersistenceWriteError(RelayError):
    """Raised when the durable store rejects a write."""


class PersistenceReadError(RelayError):
    """Raised when the durable store cannot be read."""


class RelayCancelledError(RelayError):
    """Raised when a wait loop observes its cancellation signal."""


__all__ = [
    "AttestationTimeoutError",
    "DestinationRevertError",
    "EventNotFoundError",
    "PersistenceReadError",
    "PersistenceWriteError",
    "PostConditionError",
    "RelayCancelledError",
    "RelayConfigurationError",
    "RelayError",
    "TransferNotFoundError",
    "TransferValidationError",
    "TransientProviderError",
]
