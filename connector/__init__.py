"""Connector layer for the clinic episode services.

Two interchangeable stores implement the collaborator contracts the agents
depend on: :class:`InMemoryClinicStore` for tests and local runs, and
:class:`ClinicAPIClient` for the hospital REST API.
"""

from __future__ import annotations

from .clinic_client import ClinicAPIClient
from .errors import (
    ClinicError,
    ConflictError,
    FinalizationError,
    IncompleteResultsError,
    InvalidTransitionError,
    LabCompletionError,
    MissingAttachmentError,
    NotFoundError,
    PartialFinalizationError,
    SlotFullError,
    TransientError,
    ValidationError,
)
from .memory import InMemoryClinicStore
from .models import (
    Appointment,
    AppointmentStatus,
    Attachment,
    DiagnosisRecord,
    DoctorSlot,
    LabOrderStatus,
    LabTestOrder,
    LabTestParameter,
    LabTestParameterResult,
    Medicine,
    Surgery,
    SurgicalStatus,
    VisitType,
    normalize_time_slot,
)

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "Attachment",
    "ClinicAPIClient",
    "ClinicError",
    "ConflictError",
    "DiagnosisRecord",
    "DoctorSlot",
    "FinalizationError",
    "InMemoryClinicStore",
    "IncompleteResultsError",
    "InvalidTransitionError",
    "LabCompletionError",
    "LabOrderStatus",
    "LabTestOrder",
    "LabTestParameter",
    "LabTestParameterResult",
    "Medicine",
    "MissingAttachmentError",
    "NotFoundError",
    "PartialFinalizationError",
    "SlotFullError",
    "Surgery",
    "SurgicalStatus",
    "TransientError",
    "ValidationError",
    "VisitType",
    "normalize_time_slot",
]
