"""Domain public API."""

from cctp_payment_relay.domain.attestation_models import (
    Attestation,
    AttestationMessage,
    AttestationResponse,
    AttestationStatus,
)
from cctp_payment_relay.domain.chain_models import (
    AuthorizingEvent,
    ChainEvent,
    RevertKind,
    SubmissionOutcome,
    SubmissionReceipt,
    classify_revert,
)
from cctp_payment_relay.domain.chains import ChainDirectory, ChainProfile, TransferRoute
from cctp_payment_relay.domain.entities import (
    ClaimResult,
    RecoveryLogEvent,
    StatusLookup,
    TransferRecord,
)
from cctp_payment_relay.domain.errors import (
    AttestationTimeoutError,
    DestinationRevertError,
    EventNotFoundError,
    PersistenceReadError,
    PersistenceWriteError,
    PostConditionError,
    RelayCancelledError,
    RelayConfigurationError,
    RelayError,
    TransferNotFoundError,
    TransferValidationError,
    TransientProviderError,
)
from cctp_payment_relay.domain.ports import (
    AttestationClient,
    ChainGateway,
    RecoveryLog,
    TransferRecordRepository,
    TransferRelayer,
    TransferStatusStore,
)
from cctp_payment_relay.domain.transfer_types import (
    ProcessingStatus,
    TransferOperation,
    TransferStatus,
    TransferStep,
)

__all__ = [
    "Attestation",
    "AttestationClient",
    "AttestationMessage",
    "AttestationResponse",
    "AttestationStatus",
    "AttestationTimeoutError",
    "AuthorizingEvent",
    "ChainDirectory",
    "ChainEvent",
    "ChainGateway",
    "ChainProfile",
    "ClaimResult",
    "DestinationRevertError",
    "EventNotFoundError",
    "PersistenceReadError",
    "PersistenceWriteError",
    "PostConditionError",
    "ProcessingStatus",
    "RecoveryLog",
    "RecoveryLogEvent",
    "RelayCancelledError",
    "RelayConfigurationError",
    "RelayError",
    "RevertKind",
    "StatusLookup",
    "SubmissionOutcome",
    "SubmissionReceipt",
    "TransferNotFoundError",
    "TransferOperation",
    "TransferRecord",
    "TransferRecordRepository",
    "TransferRelayer",
    "TransferRoute",
    "TransferStatus",
    "TransferStatusStore",
    "TransferStep",
    "TransferValidationError",
    "TransientProviderError",
    "classify_revert",
]
