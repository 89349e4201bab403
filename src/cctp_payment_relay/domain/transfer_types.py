"""Transfer operation, status and step helpers."""

from enum import StrEnum

from cctp_payment_relay.domain.errors import TransferValidationError


class TransferOperation(StrEnum):
    """Business actions that trigger a cross-chain transfer."""

    START_JOB = "startJob"
    RELEASE_PAYMENT = "releasePayment"
    LOCK_MILESTONE = "lockMilestone"
    SETTLE_DISPUTE = "settleDispute"


class TransferStatus(StrEnum):
    """Relay lifecycle states."""

    PENDING = "pending"
    POLLING_ATTESTATION = "polling_attestation"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferStep(StrEnum):
    """Observability labels recorded alongside the status."""

    INITIATED = "initiated"
    WAITING_FOR_EVENT = "waiting_for_event"
    EVENT_DETECTED = "event_detected"
    POLLING_ATTESTATION = "polling_attestation"
    ATTESTATION_READY = "attestation_ready"
    EXECUTING_RECEIVE = "executing_receive"
    RELAYED = "relayed"
    ALREADY_RELAYED = "already_relayed"
    FAILED = "failed"


class ProcessingStatus(StrEnum):
    """Outcome of a trigger request."""

    PROCESSING = "processing"
    ALREADY_PROCESSING = "already_processing"
    ALREADY_COMPLETED = "already_completed"


ACTIVE_STATUSES = frozenset({TransferStatus.PENDING, TransferStatus.POLLING_ATTESTATION})
TERMINAL_STATUSES = frozenset({TransferStatus.COMPLETED, TransferStatus.FAILED})

# Operations whose source transaction is the burn itself.
KNOWN_BURN_OPERATIONS = frozenset(
    {
        TransferOperation.START_JOB,
        TransferOperation.LOCK_MILESTONE,
        TransferOperation.SETTLE_DISPUTE,
    }
)

_STATUS_RANK = {
    TransferStatus.PENDING: 0,
    TransferStatus.POLLING_ATTESTATION: 1,
    TransferStatus.COMPLETED: 2,
    TransferStatus.FAILED: 2,
}

_OPERATION_ALIASES = {
    "startjob": TransferOperation.START_JOB,
    "releasepayment": TransferOperation.RELEASE_PAYMENT,
    "lockmilestone": TransferOperation.LOCK_MILESTONE,
    "settledispute": TransferOperation.SETTLE_DISPUTE,
}


def status_rank(status: TransferStatus) -> int:
    """Position of a status in the forward-only ordering."""

    return _STATUS_RANK[status]


def is_status_transition_allowed(current: TransferStatus, new: TransferStatus) -> bool:
    """Return whether a stored record may move from `current` to `new`.

    Terminal records never change. Failed is reachable from any active
    state; otherwise the status may only stay put or advance.
    """

    if current in TERMINAL_STATUSES:
        return False
    if new is TransferStatus.FAILED:
        return True
    return _STATUS_RANK[new] >= _STATUS_RANK[current]


def parse_operation(value: str) -> TransferOperation:
    """Accept `releasePayment`, `release-payment` or `release_payment`."""

    normalized = value.strip().replace("-", "").replace("_", "").lower()
    operation = _OPERATION_ALIASES.get(normalized)
    if operation is None:
        raise TransferValidationError(f"Unsupported operation '{value}'.")
    return operation


__all__ = [
    "ACTIVE_STATUSES",
    "KNOWN_BURN_OPERATIONS",
    "ProcessingStatus",
    "TERMINAL_STATUSES",
    "TransferOperation",
    "TransferStatus",
    "TransferStep",
    "is_status_transition_allowed",
    "parse_operation",
    "status_rank",
]
