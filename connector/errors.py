"""Error taxonomy shared by the clinic stores and workflow agents."""
from __future__ import annotations

from typing import Optional, Sequence

__all__ = [
    "ClinicError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "SlotFullError",
    "InvalidTransitionError",
    "TransientError",
    "FinalizationError",
    "PartialFinalizationError",
    "LabCompletionError",
    "IncompleteResultsError",
    "MissingAttachmentError",
]


class ClinicError(RuntimeError):
    """Base exception for clinic store and workflow errors."""


class ValidationError(ClinicError, ValueError):
    """Raised when required input is missing or malformed."""


class NotFoundError(ClinicError):
    """Raised when a referenced entity does not exist."""


class ConflictError(ClinicError):
    """Raised when a write collides with existing state."""


class SlotFullError(ConflictError):
    """Raised when both sides of a doctor slot are already occupied."""

    def __init__(self, doctor_id: str, time_slot: object) -> None:
        super().__init__(f"Slot for doctor {doctor_id} at {time_slot} is full")
        self.doctor_id = doctor_id
        self.time_slot = time_slot


class InvalidTransitionError(ConflictError):
    """Raised when an entity cannot move to the requested status."""


class TransientError(ClinicError):
    """Raised when a remote collaborator fails in a retryable way."""


class FinalizationError(ClinicError):
    """Raised when the mandatory diagnosis step of a finalization fails."""


class PartialFinalizationError(FinalizationError):
    """The diagnosis record was committed but the status transition failed."""

    def __init__(self, message: str, record: object) -> None:
        super().__init__(message)
        self.record = record


class LabCompletionError(ConflictError):
    """Base class for errors blocking a lab order's completion."""

    def __init__(
        self,
        message: str,
        *,
        missing_parameters: Optional[Sequence[str]] = None,
        attachment_missing: bool = False,
    ) -> None:
        super().__init__(message)
        self.missing_parameters = list(missing_parameters or [])
        self.attachment_missing = attachment_missing


class IncompleteResultsError(LabCompletionError):
    """Raised when catalog parameters still lack a recorded value."""


class MissingAttachmentError(LabCompletionError):
    """Raised when no report document is attached to the order."""
