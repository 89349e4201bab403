from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from cctp_payment_relay.domain.errors import AttestationTimeoutError, RelayCancelledError
from cctp_payment_relay.infrastructure.attestation import (
    PATH_URL_TEMPLATE,
    SANDBOX_BASE_URL,
    IrisAttestationClient,
)

BURN_TX = "0x" + "ab" * 32
RECIPIENT = "0x" + "12" * 20


def _complete_body() -> dict[str, object]:
    return {
        "messages": [
            {
                "status": "complete",
                "message": "0x0102",
                "attestation": "0x0304",
                "eventNonce": "7",
                "decodedMessage": {
                    "decodedMessageBody": {
                        "mintRecipient": "0x" + "00" * 12 + "12" * 20,
                        "amount": "2500000",
                    }
                },
            }
        ]
    }


def test_lookup_url_uses_query_template_by_default() -> None:
    client = IrisAttestationClient(SANDBOX_BASE_URL + "/")

    assert client.lookup_url(3, BURN_TX) == (
        f"https://iris-api-sandbox.circle.com/v2/messages/3?transactionHash={BURN_TX}"
    )


def test_lookup_url_supports_path_template() -> None:
    client = IrisAttestationClient(
        "https://attestation.example.com/v1/messages",
        url_template=PATH_URL_TEMPLATE,
    )

    assert client.lookup_url(0, BURN_TX) == (
        f"https://attestation.example.com/v1/messages/0/{BURN_TX}"
    )


def test_poll_tolerates_errors_until_complete() -> None:
    responses = iter(
        [
            httpx.Response(404, json={"error": "Message hash not found"}),
            httpx.Response(500, text="upstream exploded"),
            httpx.Response(200, text="{not json"),
            httpx.Response(200, json={"messages": [{"status": "unknown_state"}]}),
            httpx.Response(200, json={"error": "rate limited"}),
            httpx.Response(200, json={"messages": [{"status": "pending_confirmations"}]}),
            httpx.Response(200, json=_complete_body()),
        ]
    )
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return next(responses)

    client = IrisAttestationClient(
        SANDBOX_BASE_URL,
        poll_interval_seconds=0.001,
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )
    attestation = asyncio.run(client.poll(0, BURN_TX))

    assert len(requests) == 7
    assert requests[0].url.params["transactionHash"] == BURN_TX
    assert attestation.message == "0x0102"
    assert attestation.attestation == "0x0304"
    assert attestation.mint_recipient == RECIPIENT
    assert attestation.amount == 2_500_000


def test_poll_tolerates_transport_errors() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=_complete_body())

    client = IrisAttestationClient(
        poll_interval_seconds=0.001,
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )

    assert asyncio.run(client.poll(0, BURN_TX)).message == "0x0102"
    assert calls == 2


def test_complete_message_without_payload_is_not_accepted() -> None:
    bodies = iter(
        [
            {"messages": [{"status": "complete", "message": "0x01", "attestation": "PENDING"}]},
            _complete_body(),
        ]
    )

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=next(bodies))

    client = IrisAttestationClient(
        poll_interval_seconds=0.001,
        timeout_seconds=5.0,
        transport=httpx.MockTransport(handler),
    )

    assert asyncio.run(client.poll(0, BURN_TX)).attestation == "0x0304"


def test_poll_times_out_near_the_configured_deadline() -> None:
    calls = 0

    def handler(_: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(200, json={"messages": [{"status": "pending_confirmations"}]})

    client = IrisAttestationClient(transport=httpx.MockTransport(handler))

    started = time.monotonic()
    with pytest.raises(AttestationTimeoutError):
        asyncio.run(client.poll(0, BURN_TX, poll_interval_seconds=0.05, timeout_seconds=0.5))
    elapsed = time.monotonic() - started

    assert 0.45 <= elapsed < 1.5
    assert 5 <= calls <= 13


def test_poll_stops_when_cancelled() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    client = IrisAttestationClient(transport=httpx.MockTransport(handler))

    async def scenario() -> None:
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            client.poll(0, BURN_TX, poll_interval_seconds=10.0, cancel_event=cancel_event)
        )
        await asyncio.sleep(0.05)
        cancel_event.set()
        await task

    started = time.monotonic()
    with pytest.raises(RelayCancelledError):
        asyncio.run(scenario())

    assert time.monotonic() - started < 2.0
