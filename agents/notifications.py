"""Best-effort delivery of "diagnosis ready" notifications."""
from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional, Protocol

logger = logging.getLogger(__name__)


class NotificationServiceProtocol(Protocol):
    def send_diagnosis_record(self, diagnosis_id: str) -> None:
        """Deliver the diagnosis record identified by *diagnosis_id* to the patient."""


@dataclass(frozen=True)
class DispatchOutcome:
    diagnosis_record_id: str
    ok: bool
    error: Optional[str] = None
    queued: bool = False


class NotificationDispatcher:
    """Fire-and-forget sender; failures are reported, never raised."""

    def __init__(self, service: NotificationServiceProtocol) -> None:
        self._service = service

    def dispatch(self, diagnosis_record_id: str) -> DispatchOutcome:
        try:
            self._service.send_diagnosis_record(diagnosis_record_id)
        except Exception as exc:  # noqa: BLE001 - delivery failures are informational only
            logger.warning("Diagnosis notification for %s failed: %s", diagnosis_record_id, exc)
            return DispatchOutcome(diagnosis_record_id, ok=False, error=str(exc))
        logger.info("Diagnosis notification sent for %s", diagnosis_record_id)
        return DispatchOutcome(diagnosis_record_id, ok=True)


class NotificationOutbox:
    """Queue that decouples notification delivery from finalization.

    Each queued id is attempted exactly once by :meth:`drain`; failed
    deliveries are reported in the returned outcomes and not requeued.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: Deque[str] = deque()

    def enqueue(self, diagnosis_record_id: str) -> DispatchOutcome:
        with self._lock:
            self._pending.append(diagnosis_record_id)
        logger.debug("Queued diagnosis notification for %s", diagnosis_record_id)
        return DispatchOutcome(diagnosis_record_id, ok=True, queued=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def take_all(self) -> List[str]:
        """Remove and return every queued id without attempting delivery."""

        with self._lock:
            batch = list(self._pending)
            self._pending.clear()
        return batch

    def drain(self, dispatcher: NotificationDispatcher) -> List[DispatchOutcome]:
        batch = self.take_all()
        outcomes = [dispatcher.dispatch(record_id) for record_id in batch]
        failures = sum(1 for outcome in outcomes if not outcome.ok)
        if batch:
            logger.info("Drained %d diagnosis notifications (%d failed)", len(batch), failures)
        return outcomes


__all__ = [
    "DispatchOutcome",
    "NotificationDispatcher",
    "NotificationOutbox",
    "NotificationServiceProtocol",
]
