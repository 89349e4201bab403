"""Resumes transfers left unfinished by a previous process."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress

from cctp_payment_relay.domain.entities import TransferRecord
from cctp_payment_relay.domain.ports import RecoveryLog, TransferStatusStore

logger = logging.getLogger(__name__)

_DEFAULT_COOLDOWN_SECONDS = 5.0

RelayDispatcher = Callable[[TransferRecord], Awaitable[bool]]


class RecoveryManager:
    """Re-dispatches every pending transfer found in the durable store.

    Runs once at startup and again, debounced by `cooldown_seconds`, each
    time a status lookup had to fall back to the database.
    """

    def __init__(
        self,
        store: TransferStatusStore,
        dispatch: RelayDispatcher,
        *,
        cooldown_seconds: float = _DEFAULT_COOLDOWN_SECONDS,
        recovery_log: RecoveryLog | None = None,
    ) -> None:
        self._store = store
        self._dispatch = dispatch
        self._cooldown_seconds = max(cooldown_seconds, 0.0)
        self._recovery_log = recovery_log
        self._task: asyncio.Task[None] | None = None
        self._last_run_at: float | None = None
        self._stopped = False

    async def recover_pending(self) -> int:
        """Dispatch all pending records; returns how many were resumed."""

        self._last_run_at = time.monotonic()
        records = await self._store.list_pending()
        resumed = 0
        for record in records:
            if await self._dispatch(record):
                resumed += 1
                logger.info(
                    "Resumed %s for job '%s' at step %s.",
                    record.operation,
                    record.job_id,
                    record.step,
                )

        if self._recovery_log is not None:
            outstanding = await asyncio.to_thread(self._recovery_log.pending_recovery)
            if outstanding:
                logger.info(
                    "Payment log lists %s pending or failed event(s) for operator review.",
                    len(outstanding),
                )
        if resumed:
            logger.info("Recovery resumed %s of %s pending transfer(s).", resumed, len(records))
        return resumed

    def schedule(self) -> bool:
        """Start a background recovery pass unless one ran recently."""

        if self._stopped:
            return False
        task = self._task
        if task is not None and not task.done():
            return False
        if (
            self._last_run_at is not None
            and time.monotonic() - self._last_run_at < self._cooldown_seconds
        ):
            return False
        self._task = asyncio.create_task(self._run_scheduled(), name="transfer-recovery")
        return True

    async def stop(self) -> None:
        """Cancel a scheduled pass and refuse new ones."""

        self._stopped = True
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _run_scheduled(self) -> None:
        try:
            await self.recover_pending()
        except Exception:
            logger.exception("Lazy transfer recovery failed.")


__all__ = ["RecoveryManager", "RelayDispatcher"]
