"""Deadline and cancellation helpers shared by polling loops."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from cctp_payment_relay.domain.errors import RelayCancelledError


@dataclass(slots=True)
class Deadline:
    """Monotonic deadline for one bounded wait."""

    timeout_seconds: float
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def remaining(self) -> float:
        return max(self.timeout_seconds - self.elapsed, 0.0)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.timeout_seconds


def ensure_not_cancelled(cancel_event: asyncio.Event | None, activity: str) -> None:
    """Raise when the caller asked the loop to stop."""

    if cancel_event is not None and cancel_event.is_set():
        raise RelayCancelledError(f"{activity} cancelled.")


async def wait_for_next_poll(
    seconds: float,
    cancel_event: asyncio.Event | None,
    activity: str,
) -> None:
    """Sleep between polls, waking early when cancelled."""

    if seconds <= 0:
        ensure_not_cancelled(cancel_event, activity)
        return
    if cancel_event is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
    except TimeoutError:
        return
    raise RelayCancelledError(f"{activity} cancelled.")


__all__ = ["Deadline", "ensure_not_cancelled", "wait_for_next_poll"]
