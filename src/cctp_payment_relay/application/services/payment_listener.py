"""Follows the native chain for payment releases and hands them to the relay."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Collection
from contextlib import aclosing, suppress

from cctp_payment_relay.domain.errors import RelayError, TransientProviderError
from cctp_payment_relay.domain.ports import ChainGateway

logger = logging.getLogger(__name__)

PAYMENT_RELEASED_EVENT = "PaymentReleased"

_DEFAULT_POLL_INTERVAL_SECONDS = 3.0

ReleaseHandler = Callable[[str, str], Awaitable[object]]
JobIdSource = Callable[[], Awaitable[Collection[str]]]


class PaymentReleaseListener:
    """Background poller for `PaymentReleased` on the job contract.

    The listener anchors at the chain tip when started and, every poll
    interval, scans the blocks mined since the last pass. `jobId` is an
    indexed string, so a log only carries its hash; events are matched
    against the job ids the relay already tracks and handed over with the
    plain id. Releases of jobs this relay never saw are not picked up.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        contract_address: str,
        *,
        chain_name: str,
        poll_interval_seconds: float = _DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        self._gateway = gateway
        self._contract_address = contract_address
        self._chain_name = chain_name
        self._poll_interval_seconds = max(poll_interval_seconds, 0.0)
        self._last_block: int | None = None
        self._on_release: ReleaseHandler | None = None
        self._job_ids: JobIdSource | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_block(self) -> int | None:
        return self._last_block

    async def start(self, on_release: ReleaseHandler, job_ids: JobIdSource) -> bool:
        """Anchor at the current block and start polling; False when already active."""

        async with self._lifecycle_lock:
            if self.active:
                return False
            self._last_block = await self._gateway.block_number()
            self._on_release = on_release
            self._job_ids = job_ids
            self._stopping.clear()
            self._task = asyncio.create_task(
                self._run(),
                name="payment-released-listener",
            )
        logger.info(
            "Listening for %s on %s from block %s.",
            PAYMENT_RELEASED_EVENT,
            self._chain_name,
            self._last_block,
        )
        return True

    async def stop(self) -> bool:
        """Stop polling; False when the listener was not active."""

        async with self._lifecycle_lock:
            task = self._task
            self._task = None
            if task is None or task.done():
                return False
            self._stopping.set()
            task.cancel()

        with suppress(asyncio.CancelledError):
            await task
        logger.info("Stopped listening for %s on %s.", PAYMENT_RELEASED_EVENT, self._chain_name)
        return True

    async def poll_once(self) -> int:
        """Scan blocks mined since the last pass; returns the releases handed over."""

        assert self._on_release is not None and self._job_ids is not None
        tip = await self._gateway.block_number()
        if self._last_block is None:
            self._last_block = tip
            return 0
        if tip <= self._last_block:
            return 0

        job_ids = frozenset(await self._job_ids())
        handled = 0
        if job_ids:
            async with aclosing(
                self._gateway.scan_events(
                    self._contract_address,
                    PAYMENT_RELEASED_EVENT,
                    self._last_block + 1,
                    tip,
                    {"jobId": job_ids},
                )
            ) as events:
                async for event in events:
                    job_id = str(event.args["jobId"])
                    logger.info(
                        "%s for job '%s' in tx %s at block %s.",
                        PAYMENT_RELEASED_EVENT,
                        job_id,
                        event.tx_hash,
                        event.block_number,
                    )
                    try:
                        await self._on_release(job_id, event.tx_hash)
                    except RelayError as exc:
                        logger.warning(
                            "Release of job '%s' (tx %s) was not accepted: %s",
                            job_id,
                            event.tx_hash,
                            exc,
                        )
                        continue
                    handled += 1
        self._last_block = tip
        return handled

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(
                    self._stopping.wait(),
                    timeout=self._poll_interval_seconds,
                )
            except TimeoutError:
                pass
            else:
                return

            try:
                await self.poll_once()
            except TransientProviderError as exc:
                logger.warning("%s listener poll failed, will retry: %s", self._chain_name, exc)
            except Exception:
                logger.exception("%s listener poll crashed.", self._chain_name)


__all__ = ["PAYMENT_RELEASED_EVENT", "PaymentReleaseListener"]
