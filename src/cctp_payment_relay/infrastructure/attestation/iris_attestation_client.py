"""HTTP client for Circle's Iris attestation service."""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import ValidationError

from cctp_payment_relay.domain.attestation_models import (
    Attestation,
    AttestationMessage,
    AttestationResponse,
    AttestationStatus,
)
from cctp_payment_relay.domain.errors import AttestationTimeoutError, TransferValidationError
from cctp_payment_relay.domain.polling import Deadline, ensure_not_cancelled, wait_for_next_poll
from cctp_payment_relay.domain.ports import AttestationClient

logger = logging.getLogger(__name__)

SANDBOX_BASE_URL = "https://iris-api-sandbox.circle.com/v2/messages"
MAINNET_BASE_URL = "https://iris-api.circle.com/v2/messages"
QUERY_URL_TEMPLATE = "{base_url}/{source_domain}?transactionHash={tx_hash}"
PATH_URL_TEMPLATE = "{base_url}/{source_domain}/{tx_hash}"


class IrisAttestationClient(AttestationClient):
    """Polls the attestation service until a burn is attested.

    Non-success responses, unreachable hosts and bodies that fail schema
    validation are logged and polling continues; only the overall timeout
    ends the wait with an error.
    """

    def __init__(
        self,
        base_url: str = SANDBOX_BASE_URL,
        *,
        url_template: str = QUERY_URL_TEMPLATE,
        poll_interval_seconds: float = 15.0,
        timeout_seconds: float = 600.0,
        request_timeout_seconds: float = 10.0,
        error_backoff_factor: float = 1.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = self._normalize_base_url(base_url)
        self._url_template = url_template
        self._poll_interval_seconds = poll_interval_seconds
        self._timeout_seconds = timeout_seconds
        self._request_timeout_seconds = request_timeout_seconds
        self._error_backoff_factor = max(error_backoff_factor, 1.0)
        self._transport = transport

    def lookup_url(self, source_domain: int, tx_hash: str) -> str:
        """URL of the attestation lookup for one burn transaction."""

        return self._url_template.format(
            base_url=self._base_url,
            source_domain=source_domain,
            tx_hash=tx_hash,
        )

    async def poll(
        self,
        source_domain: int,
        tx_hash: str,
        *,
        poll_interval_seconds: float | None = None,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Attestation:
        """Query at a fixed interval until complete or the deadline passes."""

        interval = (
            self._poll_interval_seconds if poll_interval_seconds is None else poll_interval_seconds
        )
        deadline = Deadline(self._timeout_seconds if timeout_seconds is None else timeout_seconds)
        url = self.lookup_url(source_domain, tx_hash)
        activity = f"Attestation polling for {tx_hash}"
        attempts = 0

        async with httpx.AsyncClient(
            timeout=self._request_timeout_seconds,
            transport=self._transport,
        ) as http_client:
            while True:
                ensure_not_cancelled(cancel_event, activity)
                attempts += 1
                delay = interval
                try:
                    attestation = await self._fetch_once(http_client, url)
                except httpx.HTTPError as exc:
                    logger.warning("Attestation request %s failed: %s", url, exc)
                    attestation = None
                    delay = interval * self._error_backoff_factor

                if attestation is not None:
                    logger.info(
                        "Attestation for %s on domain %s ready after %s attempt(s).",
                        tx_hash,
                        source_domain,
                        attempts,
                    )
                    return attestation

                if deadline.expired:
                    raise AttestationTimeoutError(
                        f"Attestation for {tx_hash} on domain {source_domain} not complete "
                        f"after {deadline.timeout_seconds:g}s ({attempts} attempts)."
                    )
                await wait_for_next_poll(min(delay, deadline.remaining), cancel_event, activity)

    async def _fetch_once(self, http_client: httpx.AsyncClient, url: str) -> Attestation | None:
        response = await http_client.get(url)
        if response.status_code == 404:
            logger.debug("No attestation message indexed yet at %s.", url)
            return None
        if not response.is_success:
            logger.warning(
                "Attestation service returned %s for %s: %s",
                response.status_code,
                url,
                self._detail_from_response(response),
            )
            return None

        try:
            payload = AttestationResponse.model_validate_json(response.content)
        except ValidationError as exc:
            logger.warning("Malformed attestation response from %s: %s", url, exc)
            return None

        if payload.error is not None:
            logger.warning("Attestation service reported an error for %s: %s", url, payload.error)
            return None
        if not payload.messages:
            return None

        message = payload.messages[0]
        if message.status is not AttestationStatus.COMPLETE:
            logger.info("Attestation at %s is %s.", url, message.status)
            return None
        return self._to_attestation(message)

    def _to_attestation(self, message: AttestationMessage) -> Attestation:
        assert message.message is not None
        assert message.attestation is not None
        decoded = message.decoded_message
        body = None if decoded is None else decoded.decoded_message_body
        mint_recipient = None
        amount = None
        if body is not None:
            mint_recipient = _address_from_word(body.mint_recipient)
            if body.amount is not None and body.amount.isdigit():
                amount = int(body.amount)
        return Attestation(
            message=message.message,
            attestation=message.attestation,
            mint_recipient=mint_recipient,
            amount=amount,
        )

    def _detail_from_response(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            text = response.text.strip()
            return text or "<no response body>"

        if isinstance(payload, dict):
            for field_name in ("error", "message", "detail"):
                detail = payload.get(field_name)
                if isinstance(detail, str):
                    return detail
        return str(payload)

    def _normalize_base_url(self, base_url: str) -> str:
        normalized = base_url.strip().rstrip("/")
        if not normalized:
            raise TransferValidationError("Attestation base URL cannot be empty.")
        return normalized


def _address_from_word(value: str | None) -> str | None:
    """CCTP encodes recipients as 32-byte words; keep the low 20 bytes."""

    if not value:
        return None
    digits = value.removeprefix("0x")
    if len(digits) == 64:
        digits = digits[-40:]
    if len(digits) != 40:
        return None
    return f"0x{digits.lower()}"


__all__ = [
    "IrisAttestationClient",
    "MAINNET_BASE_URL",
    "PATH_URL_TEMPLATE",
    "QUERY_URL_TEMPLATE",
    "SANDBOX_BASE_URL",
]
