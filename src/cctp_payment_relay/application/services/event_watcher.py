"""Polls a chain for the event that authorizes a relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from contextlib import aclosing
from typing import Any

from cctp_payment_relay.domain.chain_models import AuthorizingEvent, ChainEvent
from cctp_payment_relay.domain.chains import ChainProfile
from cctp_payment_relay.domain.errors import (
    EventNotFoundError,
    RelayConfigurationError,
    TransferValidationError,
    TransientProviderError,
)
from cctp_payment_relay.domain.polling import Deadline, ensure_not_cancelled, wait_for_next_poll
from cctp_payment_relay.domain.ports import ChainGateway
from cctp_payment_relay.domain.transfer_types import TransferOperation

logger = logging.getLogger(__name__)

_DEFAULT_POLL_INTERVAL_SECONDS = 3.0
_DEFAULT_TIMEOUT_SECONDS = 300.0

_EVENT_BY_OPERATION = {
    TransferOperation.START_JOB: "JobStarted",
    TransferOperation.RELEASE_PAYMENT: "PaymentReleased",
}


class EventWatcher:
    """Finds the source event of a transfer whose burn hash is not yet known.

    The exact block is unknown, so scanning starts one search window below
    the tip and then follows the tip forward. When the chain outruns the
    scanner by more than the chain's re-anchor lag, the cursor jumps back
    to one window below the tip instead of working through an ever-growing
    backlog.
    """

    def __init__(
        self,
        gateways: Mapping[str, ChainGateway],
        *,
        poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._gateways = dict(gateways)
        self._poll_interval_seconds = max(poll_interval_seconds, 0.0)
        self._timeout_seconds = max(timeout_seconds, 0.0)

    async def find_authorizing_event(
        self,
        operation: TransferOperation,
        chain: ChainProfile,
        contract_address: str,
        argument_filters: Mapping[str, Any],
        *,
        search_window_blocks: int | None = None,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AuthorizingEvent:
        """Return the first matching event or raise `EventNotFoundError`."""

        event_name = _EVENT_BY_OPERATION.get(operation)
        if event_name is None:
            raise TransferValidationError(f"{operation} has no authorizing event to watch.")
        gateway = self._gateways.get(chain.name)
        if gateway is None:
            raise RelayConfigurationError(f"No chain gateway configured for '{chain.name}'.")

        window = max(
            search_window_blocks if search_window_blocks is not None else chain.search_window_blocks,
            0,
        )
        deadline = Deadline(self._timeout_seconds if timeout_seconds is None else timeout_seconds)
        activity = f"Watching {event_name} on {chain.name}"
        cursor: int | None = None

        while True:
            ensure_not_cancelled(cancel_event, activity)
            try:
                tip = await gateway.block_number()
                if cursor is None or tip - cursor > chain.reanchor_lag_blocks:
                    if cursor is not None:
                        logger.info(
                            "%s: re-anchoring scan from block %s to %s (tip %s).",
                            activity,
                            cursor,
                            max(tip - window, 0),
                            tip,
                        )
                    cursor = max(tip - window, 0)

                if cursor <= tip:
                    async with aclosing(
                        gateway.scan_events(
                            contract_address,
                            event_name,
                            cursor,
                            tip,
                            argument_filters,
                        )
                    ) as events:
                        async for event in events:
                            logger.info(
                                "%s: found in tx %s at block %s.",
                                activity,
                                event.tx_hash,
                                event.block_number,
                            )
                            return _authorizing_event(event)
                    cursor = tip + 1
            except TransientProviderError as exc:
                logger.warning("%s: provider error, will retry: %s", activity, exc)

            if deadline.expired:
                raise EventNotFoundError(
                    f"{event_name} not found on {chain.name} within "
                    f"{deadline.timeout_seconds:g}s."
                )
            await wait_for_next_poll(
                min(self._poll_interval_seconds, deadline.remaining),
                cancel_event,
                activity,
            )


def _authorizing_event(event: ChainEvent) -> AuthorizingEvent:
    recipient = event.args.get("applicant") or event.args.get("selectedApplicant")
    amount = event.args.get("amount")
    milestone = event.args.get("milestone")
    return AuthorizingEvent(
        event_name=event.name,
        tx_hash=event.tx_hash,
        block_number=event.block_number,
        recipient=None if recipient is None else str(recipient),
        amount=None if amount is None else int(amount),
        milestone=None if milestone is None else int(milestone),
        args=dict(event.args),
    )


__all__ = ["EventWatcher"]
