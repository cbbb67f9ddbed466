"""Workflow agents for the clinical episode finalization path."""

from .finalization import (
    ConsultationFinalizationSaga,
    FinalizationRequest,
    FinalizationResult,
    FollowUpRequest,
    SurgeryRequest,
)
from .lab_orders import CompletenessReport, LabOrderLifecycle
from .notifications import DispatchOutcome, NotificationDispatcher, NotificationOutbox
from .slots import SLOT_CAPACITY, SlotAllocator

__all__ = [
    "CompletenessReport",
    "ConsultationFinalizationSaga",
    "DispatchOutcome",
    "FinalizationRequest",
    "FinalizationResult",
    "FollowUpRequest",
    "LabOrderLifecycle",
    "NotificationDispatcher",
    "NotificationOutbox",
    "SLOT_CAPACITY",
    "SlotAllocator",
    "SurgeryRequest",
]
