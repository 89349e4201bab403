"""Value objects exchanged with chain gateways."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class SubmissionOutcome(StrEnum):
    """Result class of a destination submission."""

    CONFIRMED = "confirmed"
    ALREADY_COMPLETED = "already_completed"
    REVERTED = "reverted"


class RevertKind(StrEnum):
    """Typed classification of a destination revert."""

    ALREADY_COMPLETED = "already_completed"
    GENERIC_REVERT = "generic_revert"


DEFAULT_ALREADY_COMPLETED_MARKERS = (
    "nonce already used",
    "already received",
    "already processed",
    "message already",
)


@dataclass(slots=True, frozen=True)
class ChainEvent:
    """Decoded log entry."""

    name: str
    tx_hash: str
    block_number: int
    log_index: int
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AuthorizingEvent:
    """Source event that authorizes a relay."""

    event_name: str
    tx_hash: str
    block_number: int
    recipient: str | None = None
    amount: int | None = None
    milestone: int | None = None
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SubmissionReceipt:
    """Destination transaction result."""

    outcome: SubmissionOutcome
    tx_hash: str | None = None
    block_number: int | None = None
    gas_used: int | None = None
    revert_kind: RevertKind | None = None
    revert_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is not SubmissionOutcome.REVERTED


def classify_revert(
    reason: str | None,
    already_completed_markers: Iterable[str] = DEFAULT_ALREADY_COMPLETED_MARKERS,
) -> RevertKind:
    """Map a decoded revert reason to a revert kind.

    Replay protection on the destination (the message nonce was already
    consumed) means another actor delivered the same transfer.
    """

    if not reason:
        return RevertKind.GENERIC_REVERT
    normalized = reason.lower()
    for marker in already_completed_markers:
        if marker and marker.lower() in normalized:
            return RevertKind.ALREADY_COMPLETED
    return RevertKind.GENERIC_REVERT


__all__ = [
    "AuthorizingEvent",
    "ChainEvent",
    "DEFAULT_ALREADY_COMPLETED_MARKERS",
    "RevertKind",
    "SubmissionOutcome",
    "SubmissionReceipt",
    "classify_revert",
]
