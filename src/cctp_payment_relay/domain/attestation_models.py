"""Validated schema of attestation service responses."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class AttestationStatus(StrEnum):
    """Message states reported by the attestation service."""

    PENDING = "pending"
    PENDING_CONFIRMATIONS = "pending_confirmations"
    COMPLETE = "complete"


class AttestationModel(BaseModel):
    """Base model; unknown fields are tolerated, unknown statuses are not."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class DecodedMessageBody(AttestationModel):
    """Burn message body fields used for post-condition checks."""

    mint_recipient: str | None = Field(default=None, alias="mintRecipient")
    amount: str | None = None


class DecodedMessage(AttestationModel):
    """Decoded CCTP message envelope."""

    decoded_message_body: DecodedMessageBody | None = Field(
        default=None, alias="decodedMessageBody"
    )


class AttestationMessage(AttestationModel):
    """One attested message."""

    status: AttestationStatus
    message: str | None = None
    attestation: str | None = None
    event_nonce: str | None = Field(default=None, alias="eventNonce")
    decoded_message: DecodedMessage | None = Field(default=None, alias="decodedMessage")

    @model_validator(mode="after")
    def require_payload_when_complete(self) -> "AttestationMessage":
        """A complete message must carry both hex payloads."""

        if self.status is not AttestationStatus.COMPLETE:
            return self
        for name, value in (("message", self.message), ("attestation", self.attestation)):
            if not value or value in {"0x", "PENDING"}:
                raise ValueError(f"Complete attestation is missing '{name}'.")
            if not value.startswith("0x"):
                raise ValueError(f"Attestation field '{name}' must be 0x-prefixed hex.")
        return self


class AttestationResponse(AttestationModel):
    """Top-level lookup response."""

    messages: list[AttestationMessage] = Field(default_factory=list)
    error: str | None = None


@dataclass(slots=True, frozen=True)
class Attestation:
    """Ready-to-submit attestation payload."""

    message: str
    attestation: str
    mint_recipient: str | None = None
    amount: int | None = None


__all__ = [
    "Attestation",
    "AttestationMessage",
    "AttestationResponse",
    "AttestationStatus",
    "DecodedMessage",
    "DecodedMessageBody",
]
