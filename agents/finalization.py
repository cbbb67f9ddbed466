"""Consultation finalization saga.

When a doctor finishes a consultation the saga runs five sequential steps:

1. book the follow-up visit, if one was requested (best-effort);
2. open the surgical case, if surgery was advised (best-effort);
3. persist the diagnosis record (mandatory);
4. move the appointment to DIAGNOSED (mandatory);
5. dispatch the "diagnosis ready" notification (best-effort).

Best-effort failures are logged and returned as warnings. Steps 1 and 2 are
never rolled back when step 3 fails; they are written so a retried
finalization reuses what an earlier attempt already created.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from connector.errors import (
    ClinicError,
    ConflictError,
    FinalizationError,
    InvalidTransitionError,
    PartialFinalizationError,
    SlotFullError,
    ValidationError,
)
from connector.models import (
    Appointment,
    AppointmentStatus,
    DiagnosisRecord,
    Medicine,
    Surgery,
    SurgicalStatus,
    VisitType,
    can_transition,
    parse_datetime,
)

from .notifications import DispatchOutcome, NotificationDispatcher, NotificationOutbox
from .slots import SlotAllocator

logger = logging.getLogger(__name__)

SURGERY_REQUESTED = frozenset({SurgicalStatus.NOT_CONFIRMED, SurgicalStatus.CONFIRMED})


class ConsultationStoreProtocol(Protocol):
    """Protocol describing the store operations the saga writes through."""

    def get_appointment(self, appointment_id: str) -> Appointment:
        """Return the appointment or raise :class:`NotFoundError`."""

    def find_appointments(self, **criteria: Any) -> List[Appointment]:
        """Return appointments matching the given criteria."""

    def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        visit_type: VisitType,
        scheduled_at: datetime,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        """Create an appointment."""

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment:
        """Transition an appointment's status."""

    def add_surgery(self, appointment_id: str, category: str, status: SurgicalStatus, **details: Any) -> Surgery:
        """Create a surgical case linked to the appointment."""

    def get_surgery_by_appointment(self, appointment_id: str) -> Optional[Surgery]:
        """Return the appointment's surgical case if one exists."""

    def add_diagnosis(self, appointment_id: str, **payload: Any) -> DiagnosisRecord:
        """Create the diagnosis record; raises :class:`ConflictError` on duplicates."""


@dataclass(frozen=True)
class FollowUpRequest:
    scheduled_at: Optional[datetime] = None


@dataclass(frozen=True)
class SurgeryRequest:
    status: SurgicalStatus = SurgicalStatus.NOT_REQUIRED
    category: Optional[str] = None
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = None

    @property
    def is_requested(self) -> bool:
        return self.status in SURGERY_REQUESTED


@dataclass(frozen=True)
class FinalizationRequest:
    """Everything a doctor submits when closing a consultation."""

    appointment_id: str
    doctor_id: str
    diagnosis: str
    notes: Optional[str] = None
    clinical_notes: Sequence[str] = ()
    medicines: Sequence[Medicine] = ()
    lab_test_refs: Sequence[str] = ()
    follow_up: Optional[FollowUpRequest] = None
    surgery: Optional[SurgeryRequest] = None
    specialty: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "FinalizationRequest":
        """Build a request from the consultation form's JSON payload."""

        follow_up = None
        follow_up_at = payload.get("followUpDateTime")
        if follow_up_at:
            follow_up = FollowUpRequest(scheduled_at=parse_datetime(follow_up_at))

        surgery = None
        surgical_status = payload.get("surgicalStatus")
        if surgical_status:
            try:
                status = SurgicalStatus(surgical_status)
            except ValueError as exc:
                raise ValidationError(f"Unknown surgical status '{surgical_status}'") from exc
            surgery = SurgeryRequest(
                status=status,
                category=payload.get("surgicalCategory"),
                description=payload.get("surgicalDescription"),
                scheduled_at=parse_datetime(payload.get("surgeryDate")),
            )

        return cls(
            appointment_id=str(payload.get("appointmentId", "")),
            doctor_id=str(payload.get("doctorId", "")),
            diagnosis=str(payload.get("diagnosis") or ""),
            notes=payload.get("notes") or None,
            clinical_notes=tuple(payload.get("clinicalNotes") or ()),
            medicines=tuple(Medicine.from_dict(item) for item in payload.get("medicines") or ()),
            lab_test_refs=tuple(
                str(item["id"]) if isinstance(item, Mapping) else str(item)
                for item in payload.get("labTests") or ()
            ),
            follow_up=follow_up,
            surgery=surgery,
            specialty=payload.get("specialty"),
        )


@dataclass
class FinalizationResult:
    record: DiagnosisRecord
    follow_up_appointment_id: Optional[str] = None
    surgery_id: Optional[str] = None
    notification: Optional[DispatchOutcome] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "diagnosis_record_id": self.record.record_id,
            "appointment_id": self.record.appointment_id,
            "follow_up_appointment_id": self.follow_up_appointment_id,
            "surgery_id": self.surgery_id,
            "notification_sent": bool(self.notification and self.notification.ok and not self.notification.queued),
            "notification_queued": bool(self.notification and self.notification.queued),
            "warnings": list(self.warnings),
        }


def merge_notes(notes: Optional[str], clinical_notes: Sequence[str]) -> Optional[str]:
    parts = [part.strip() for part in [notes or "", *clinical_notes] if part and part.strip()]
    return "\n".join(parts) or None


class ConsultationFinalizationSaga:
    """Runs the finalization steps for one consultation at a time."""

    def __init__(
        self,
        store: ConsultationStoreProtocol,
        *,
        slot_allocator: Optional[SlotAllocator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        outbox: Optional[NotificationOutbox] = None,
    ) -> None:
        self._store = store
        self._slots = slot_allocator or SlotAllocator(store)  # type: ignore[arg-type]
        self._dispatcher = dispatcher or NotificationDispatcher(store)  # type: ignore[arg-type]
        self._outbox = outbox

    def finalize(self, request: FinalizationRequest) -> FinalizationResult:
        self._validate(request)
        appointment = self._store.get_appointment(request.appointment_id)
        self._check_can_diagnose(appointment)

        logger.info(
            "Finalizing consultation for appointment %s by doctor %s (%s)",
            appointment.appointment_id,
            request.doctor_id,
            request.specialty or "no specialty",
        )
        warnings: List[str] = []

        follow_up_id = self._book_follow_up(request, appointment, warnings)
        surgery_id = self._open_surgical_case(request, warnings)
        record = self._persist_diagnosis(request, follow_up_id)
        self._mark_diagnosed(record)
        notification = self._notify(record, warnings)

        logger.info(
            "Appointment %s diagnosed as record %s with %d warning(s)",
            appointment.appointment_id,
            record.record_id,
            len(warnings),
        )
        return FinalizationResult(
            record=record,
            follow_up_appointment_id=follow_up_id,
            surgery_id=surgery_id,
            notification=notification,
            warnings=warnings,
        )

    @staticmethod
    def _validate(request: FinalizationRequest) -> None:
        if not request.appointment_id or not request.appointment_id.strip():
            raise ValidationError("appointment_id is required")
        if not request.doctor_id or not request.doctor_id.strip():
            raise ValidationError("doctor_id is required")
        if not request.diagnosis or not request.diagnosis.strip():
            raise ValidationError("Diagnosis is required")
        surgery = request.surgery
        if surgery and surgery.is_requested and not (surgery.category and surgery.category.strip()):
            raise ValidationError("Surgery category is required")

    @staticmethod
    def _check_can_diagnose(appointment: Appointment) -> None:
        if appointment.status is AppointmentStatus.DIAGNOSED:
            raise ConflictError(f"Appointment {appointment.appointment_id} is already diagnosed")
        if not can_transition(appointment.status, AppointmentStatus.DIAGNOSED):
            raise InvalidTransitionError(
                f"Appointment {appointment.appointment_id} cannot be diagnosed from {appointment.status.value}"
            )

    def _book_follow_up(
        self,
        request: FinalizationRequest,
        appointment: Appointment,
        warnings: List[str],
    ) -> Optional[str]:
        if request.follow_up is None or request.follow_up.scheduled_at is None:
            return None
        scheduled_at = request.follow_up.scheduled_at
        try:
            follow_up = self._existing_follow_up(request.doctor_id, appointment.patient_id, scheduled_at)
            if follow_up is None:
                if not self._slots.has_capacity(request.doctor_id, scheduled_at):
                    raise SlotFullError(request.doctor_id, scheduled_at.isoformat())
                follow_up = self._store.book_appointment(
                    appointment.patient_id,
                    request.doctor_id,
                    VisitType.FOLLOW_UP,
                    scheduled_at,
                    AppointmentStatus.PENDING,
                )
            try:
                self._slots.allocate(request.doctor_id, scheduled_at, follow_up.appointment_id)
            except ClinicError:
                self._cancel_orphan(follow_up.appointment_id)
                raise
        except Exception as exc:  # noqa: BLE001 - follow-up booking never aborts finalization
            logger.warning(
                "Follow-up booking for appointment %s failed: %s",
                appointment.appointment_id,
                exc,
                exc_info=True,
            )
            warnings.append(f"Follow-up booking failed: {exc}")
            return None

        logger.info("Follow-up appointment %s booked for %s", follow_up.appointment_id, scheduled_at.isoformat())
        return follow_up.appointment_id

    def _existing_follow_up(self, doctor_id: str, patient_id: str, scheduled_at: datetime) -> Optional[Appointment]:
        matches = self._store.find_appointments(
            patient_id=patient_id,
            doctor_id=doctor_id,
            scheduled_at=scheduled_at,
            visit_type=VisitType.FOLLOW_UP,
            status=AppointmentStatus.PENDING,
        )
        return matches[0] if matches else None

    def _cancel_orphan(self, appointment_id: str) -> None:
        try:
            self._store.update_status(appointment_id, AppointmentStatus.CANCELLED)
        except ClinicError as exc:
            logger.error("Could not cancel unallocated follow-up appointment %s: %s", appointment_id, exc)

    def _open_surgical_case(self, request: FinalizationRequest, warnings: List[str]) -> Optional[str]:
        surgery = request.surgery
        if surgery is None or not surgery.is_requested:
            return None
        try:
            existing = self._store.get_surgery_by_appointment(request.appointment_id)
            if existing is not None:
                return existing.surgery_id
            created = self._store.add_surgery(
                request.appointment_id,
                surgery.category.strip(),
                surgery.status,
                description=surgery.description,
                scheduled_at=surgery.scheduled_at,
            )
        except Exception as exc:  # noqa: BLE001 - surgery creation never aborts finalization
            logger.warning(
                "Surgical case for appointment %s failed: %s",
                request.appointment_id,
                exc,
                exc_info=True,
            )
            warnings.append(f"Surgery creation failed: {exc}")
            return None

        logger.info("Surgical case %s opened for appointment %s", created.surgery_id, request.appointment_id)
        return created.surgery_id

    def _persist_diagnosis(self, request: FinalizationRequest, follow_up_id: Optional[str]) -> DiagnosisRecord:
        try:
            return self._store.add_diagnosis(
                request.appointment_id,
                diagnosis=request.diagnosis.strip(),
                notes=merge_notes(request.notes, request.clinical_notes),
                medicines=tuple(request.medicines),
                lab_test_refs=tuple(request.lab_test_refs),
                follow_up_appointment_id=follow_up_id,
            )
        except ConflictError:
            logger.error("Diagnosis for appointment %s already exists", request.appointment_id)
            raise
        except ClinicError as exc:
            logger.error("Diagnosis for appointment %s could not be saved: %s", request.appointment_id, exc)
            raise FinalizationError(
                f"Diagnosis for appointment {request.appointment_id} could not be saved: {exc}"
            ) from exc

    def _mark_diagnosed(self, record: DiagnosisRecord) -> None:
        try:
            self._store.update_status(record.appointment_id, AppointmentStatus.DIAGNOSED)
        except ClinicError as exc:
            logger.error(
                "Diagnosis %s saved but appointment %s was not marked diagnosed: %s",
                record.record_id,
                record.appointment_id,
                exc,
            )
            raise PartialFinalizationError(
                f"Diagnosis {record.record_id} saved but appointment {record.appointment_id} "
                f"could not be marked diagnosed: {exc}",
                record,
            ) from exc

    def _notify(self, record: DiagnosisRecord, warnings: List[str]) -> Optional[DispatchOutcome]:
        if self._outbox is not None:
            return self._outbox.enqueue(record.record_id)
        outcome = self._dispatcher.dispatch(record.record_id)
        if not outcome.ok:
            warnings.append(f"Notification failed: {outcome.error}")
        return outcome


__all__ = [
    "ConsultationFinalizationSaga",
    "ConsultationStoreProtocol",
    "FinalizationRequest",
    "FinalizationResult",
    "FollowUpRequest",
    "SurgeryRequest",
    "merge_notes",
]
