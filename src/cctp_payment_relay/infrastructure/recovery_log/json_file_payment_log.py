"""Flat JSON recovery log kept next to the durable store."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from cctp_payment_relay.domain.entities import RecoveryLogEvent, utc_now
from cctp_payment_relay.domain.ports import RecoveryLog

logger = logging.getLogger(__name__)

PENDING_STATUS = "pending"
COMPLETED_STATUS = "completed"
FAILED_STATUS = "failed"

_RECOVERABLE_STATUSES = frozenset({PENDING_STATUS, FAILED_STATUS})


class JsonFilePaymentLog(RecoveryLog):
    """Job id -> list of relay events, persisted as one JSON document.

    The file is rewritten through a temporary sibling and an atomic rename.
    I/O failures are logged, never raised to the relay.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def record_event(
        self,
        job_id: str,
        event: str,
        tx_hash: str,
        *,
        chain: str | None = None,
    ) -> None:
        """Append a pending event for a job."""

        entry: dict[str, Any] = {
            "event": event,
            "txHash": tx_hash,
            "status": PENDING_STATUS,
            "timestamp": utc_now().isoformat(),
        }
        if chain is not None:
            entry["chain"] = chain

        with self._lock:
            document = self._load()
            document.setdefault(job_id, []).append(entry)
            self._save(document)

    def update_event_status(
        self,
        job_id: str,
        event: str,
        tx_hash: str,
        status: str,
        *,
        completion_tx_hash: str | None = None,
        error: str | None = None,
    ) -> None:
        """Update the latest entry of `job_id` matching event and hash."""

        with self._lock:
            document = self._load()
            entries = document.get(job_id, [])
            for entry in reversed(entries):
                if entry.get("event") == event and entry.get("txHash") == tx_hash:
                    entry["status"] = status
                    entry["updatedAt"] = utc_now().isoformat()
                    if completion_tx_hash is not None:
                        entry["completionTxHash"] = completion_tx_hash
                    if error is not None:
                        entry["error"] = error
                    break
            else:
                logger.debug(
                    "No recovery log entry for job '%s' event %s tx %s.",
                    job_id,
                    event,
                    tx_hash,
                )
                return
            self._save(document)

    def pending_recovery(self) -> list[RecoveryLogEvent]:
        """Events still pending or failed, oldest first."""

        with self._lock:
            document = self._load()

        events: list[RecoveryLogEvent] = []
        for job_id, entries in document.items():
            for entry in entries:
                if entry.get("status") not in _RECOVERABLE_STATUSES:
                    continue
                events.append(
                    RecoveryLogEvent(
                        job_id=job_id,
                        event=str(entry.get("event", "")),
                        tx_hash=str(entry.get("txHash", "")),
                        status=str(entry["status"]),
                        timestamp=str(entry.get("timestamp", "")),
                        chain=entry.get("chain"),
                        completion_tx_hash=entry.get("completionTxHash"),
                        error=entry.get("error"),
                    )
                )
        events.sort(key=lambda item: item.timestamp)
        return events

    def _load(self) -> dict[str, list[dict[str, Any]]]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("Reading payment log %s failed: %s", self._path, exc)
            return {}

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Payment log %s is not valid JSON, starting over: %s", self._path, exc)
            return {}
        if not isinstance(document, dict):
            logger.warning("Payment log %s has unexpected shape, starting over.", self._path)
            return {}
        return {
            str(job_id): [entry for entry in entries if isinstance(entry, dict)]
            for job_id, entries in document.items()
            if isinstance(entries, list)
        }

    def _save(self, document: dict[str, list[dict[str, Any]]]) -> None:
        temporary = self._path.with_name(f"{self._path.name}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temporary.write_text(json.dumps(document, indent=2), encoding="utf-8")
            os.replace(temporary, self._path)
        except OSError as exc:
            logger.warning("Writing payment log %s failed: %s", self._path, exc)


__all__ = [
    "COMPLETED_STATUS",
    "FAILED_STATUS",
    "JsonFilePaymentLog",
    "PENDING_STATUS",
]
