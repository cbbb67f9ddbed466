"""In-memory clinic store used by tests, demos and the dashboard.

The store implements every collaborator contract the agents consume (slot,
appointment, surgery, diagnosis, lab order and notification stores). It is
thread-safe: each operation runs under one re-entrant lock, and
:meth:`InMemoryClinicStore.transaction` lets a caller group several calls
into one atomic unit.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from .errors import ConflictError, InvalidTransitionError, NotFoundError, SlotFullError, ValidationError
from .models import (
    Appointment,
    AppointmentStatus,
    Attachment,
    DEFAULT_SURGERY_DESCRIPTION,
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
    can_transition,
    normalize_time_slot,
)

logger = logging.getLogger(__name__)

_UNSET = object()


class InMemoryClinicStore:
    """In-memory simulator of the clinic API."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sequence: int = 1
        self._slots: Dict[str, DoctorSlot] = {}
        self._appointments: Dict[str, Appointment] = {}
        self._surgeries: Dict[str, Surgery] = {}
        self._diagnoses: Dict[str, DiagnosisRecord] = {}
        self._lab_parameters: Dict[str, List[LabTestParameter]] = {}
        self._lab_orders: Dict[str, LabTestOrder] = {}
        self._lab_results: Dict[str, LabTestParameterResult] = {}
        self._attachments: Dict[str, List[Attachment]] = {}
        self.sent_notifications: List[str] = []

    @contextmanager
    def transaction(self) -> Iterator["InMemoryClinicStore"]:
        with self._lock:
            yield self

    def _next_id(self, prefix: str) -> str:
        identifier = f"{prefix}-{self._sequence}"
        self._sequence += 1
        return identifier

    # Slots

    def get_slots(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DoctorSlot]:
        lower = normalize_time_slot(start) if start else None
        upper = normalize_time_slot(end) if end else None
        with self._lock:
            slots = [
                replace(slot)
                for slot in self._slots.values()
                if slot.doctor_id == doctor_id
                and (lower is None or slot.time_slot >= lower)
                and (upper is None or slot.time_slot <= upper)
            ]
        return sorted(slots, key=lambda slot: slot.time_slot, reverse=True)

    def find_slot(self, doctor_id: str, time_slot: datetime) -> Optional[DoctorSlot]:
        key = normalize_time_slot(time_slot)
        with self._lock:
            for slot in self._slots.values():
                if slot.doctor_id == doctor_id and slot.time_slot == key:
                    return replace(slot)
        return None

    def find_slot_by_appointment(self, doctor_id: str, appointment_id: str) -> Optional[DoctorSlot]:
        with self._lock:
            for slot in self._slots.values():
                if slot.doctor_id == doctor_id and slot.holds(appointment_id):
                    return replace(slot)
        return None

    def add_slot(self, doctor_id: str, appointment1_id: str, time_slot: datetime) -> DoctorSlot:
        if not doctor_id or not appointment1_id:
            raise ValidationError("doctor_id and appointment1_id are required")
        key = normalize_time_slot(time_slot)
        with self._lock:
            if self.find_slot(doctor_id, key) is not None:
                raise ConflictError(f"Slot for doctor {doctor_id} at {key.isoformat()} already exists")
            slot = DoctorSlot(
                slot_id=self._next_id("slot"),
                doctor_id=doctor_id,
                time_slot=key,
                appointment1_id=appointment1_id,
            )
            self._slots[slot.slot_id] = slot
            return replace(slot)

    def update_slot(
        self,
        slot_id: str,
        *,
        appointment1_id: object = _UNSET,
        appointment2_id: object = _UNSET,
        time_slot: Optional[datetime] = None,
    ) -> DoctorSlot:
        with self._lock:
            slot = self._slots.get(slot_id)
            if slot is None:
                raise NotFoundError(f"Slot '{slot_id}' does not exist")
            updated = replace(slot)
            if appointment2_id is not _UNSET:
                if (
                    appointment2_id is not None
                    and slot.appointment2_id is not None
                    and slot.appointment2_id != appointment2_id
                ):
                    raise SlotFullError(slot.doctor_id, slot.time_slot.isoformat())
                updated.appointment2_id = appointment2_id
            if appointment1_id is not _UNSET:
                updated.appointment1_id = appointment1_id
            if time_slot is not None:
                key = normalize_time_slot(time_slot)
                existing = self.find_slot(slot.doctor_id, key)
                if existing is not None and existing.slot_id != slot_id:
                    raise ConflictError(f"Slot for doctor {slot.doctor_id} at {key.isoformat()} already exists")
                updated.time_slot = key
            if updated.appointment1_id and updated.appointment1_id == updated.appointment2_id:
                raise ConflictError("A slot cannot reference the same appointment twice")
            self._slots[slot_id] = updated
            return replace(updated)

    # Appointments

    def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        visit_type: VisitType,
        scheduled_at: datetime,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        if not patient_id or not doctor_id:
            raise ValidationError("patient_id and doctor_id are required")
        with self._lock:
            appointment = Appointment(
                appointment_id=self._next_id("appt"),
                patient_id=patient_id,
                doctor_id=doctor_id,
                visit_type=VisitType(visit_type),
                scheduled_at=scheduled_at,
                status=AppointmentStatus(status),
            )
            self._appointments[appointment.appointment_id] = appointment
            return replace(appointment)

    def get_appointment(self, appointment_id: str) -> Appointment:
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None:
                raise NotFoundError(f"Appointment '{appointment_id}' does not exist")
            return replace(appointment)

    def find_appointments(
        self,
        *,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        visit_type: Optional[VisitType] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        minute = normalize_time_slot(scheduled_at) if scheduled_at else None
        with self._lock:
            matches = [
                replace(appointment)
                for appointment in self._appointments.values()
                if (patient_id is None or appointment.patient_id == patient_id)
                and (doctor_id is None or appointment.doctor_id == doctor_id)
                and (minute is None or normalize_time_slot(appointment.scheduled_at) == minute)
                and (visit_type is None or appointment.visit_type is visit_type)
                and (status is None or appointment.status is status)
            ]
        return sorted(matches, key=lambda appointment: appointment.scheduled_at)

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment:
        status = AppointmentStatus(status)
        with self._lock:
            appointment = self._appointments.get(appointment_id)
            if appointment is None:
                raise NotFoundError(f"Appointment '{appointment_id}' does not exist")
            if not can_transition(appointment.status, status):
                raise InvalidTransitionError(
                    f"Appointment {appointment_id} cannot move from {appointment.status.value} to {status.value}"
                )
            appointment.status = status
            return replace(appointment)

    # Surgeries

    def add_surgery(
        self,
        appointment_id: str,
        category: str,
        status: SurgicalStatus,
        *,
        description: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Surgery:
        if not category or not category.strip():
            raise ValidationError("Surgery category is required")
        with self._lock:
            self.get_appointment(appointment_id)
            surgery = Surgery(
                surgery_id=self._next_id("surgery"),
                appointment_id=appointment_id,
                category=category.strip(),
                status=SurgicalStatus(status),
                description=description or DEFAULT_SURGERY_DESCRIPTION,
                scheduled_at=scheduled_at,
            )
            self._surgeries[surgery.surgery_id] = surgery
            return replace(surgery)

    def get_surgery_by_appointment(self, appointment_id: str) -> Optional[Surgery]:
        with self._lock:
            for surgery in self._surgeries.values():
                if surgery.appointment_id == appointment_id:
                    return replace(surgery)
        return None

    # Diagnoses

    def add_diagnosis(
        self,
        appointment_id: str,
        *,
        diagnosis: str,
        notes: Optional[str] = None,
        medicines: Sequence[Medicine] = (),
        lab_test_refs: Sequence[str] = (),
        follow_up_appointment_id: Optional[str] = None,
    ) -> DiagnosisRecord:
        """Create the diagnosis record and open a lab order per referenced test."""

        if not diagnosis or not diagnosis.strip():
            raise ValidationError("Diagnosis is required")
        with self._lock:
            self.get_appointment(appointment_id)
            if appointment_id in self._diagnoses:
                raise ConflictError(f"Diagnosis already recorded for appointment {appointment_id}")
            record = DiagnosisRecord(
                record_id=self._next_id("diagnosis"),
                appointment_id=appointment_id,
                diagnosis=diagnosis,
                notes=notes,
                medicines=tuple(medicines),
                lab_test_refs=tuple(lab_test_refs),
                follow_up_appointment_id=follow_up_appointment_id,
            )
            self._diagnoses[appointment_id] = record
            for lab_test_id in record.lab_test_refs:
                self.create_lab_order(lab_test_id, owner_appointment_id=appointment_id)
            return record

    def get_diagnosis(self, appointment_id: str) -> Optional[DiagnosisRecord]:
        with self._lock:
            return self._diagnoses.get(appointment_id)

    def get_diagnosis_by_id(self, record_id: str) -> Optional[DiagnosisRecord]:
        with self._lock:
            for record in self._diagnoses.values():
                if record.record_id == record_id:
                    return record
        return None

    # Lab catalog and orders

    def register_lab_test(self, lab_test_id: str, parameters: Iterable[LabTestParameter]) -> None:
        with self._lock:
            self._lab_parameters[lab_test_id] = list(parameters)

    def get_parameters_by_lab_test(self, lab_test_id: str) -> List[LabTestParameter]:
        with self._lock:
            return list(self._lab_parameters.get(lab_test_id, []))

    def create_lab_order(
        self,
        lab_test_id: str,
        *,
        owner_appointment_id: Optional[str] = None,
        external_order_id: Optional[str] = None,
    ) -> LabTestOrder:
        if bool(owner_appointment_id) == bool(external_order_id):
            raise ValidationError("A lab order needs exactly one of owner_appointment_id or external_order_id")
        with self._lock:
            order = LabTestOrder(
                order_id=self._next_id("lab-order"),
                lab_test_id=lab_test_id,
                owner_appointment_id=owner_appointment_id,
                external_order_id=external_order_id,
            )
            self._lab_orders[order.order_id] = order
            self._attachments[order.order_id] = []
            return replace(order)

    def get_order(self, order_id: str) -> LabTestOrder:
        with self._lock:
            order = self._lab_orders.get(order_id)
            if order is None:
                raise NotFoundError(f"Lab order '{order_id}' does not exist")
            return replace(order)

    def list_orders(self, status: Optional[LabOrderStatus] = None) -> List[LabTestOrder]:
        with self._lock:
            return [
                replace(order)
                for order in self._lab_orders.values()
                if status is None or order.status is status
            ]

    def update_order(
        self,
        order_id: str,
        *,
        status: Optional[LabOrderStatus] = None,
        tentative_report_date: object = _UNSET,
        is_sent_external: Optional[bool] = None,
        external_lab_name: object = _UNSET,
    ) -> LabTestOrder:
        with self._lock:
            order = self._lab_orders.get(order_id)
            if order is None:
                raise NotFoundError(f"Lab order '{order_id}' does not exist")
            if status is not None:
                order.status = LabOrderStatus(status)
            if tentative_report_date is not _UNSET:
                order.tentative_report_date = tentative_report_date  # type: ignore[assignment]
            if is_sent_external is not None:
                order.is_sent_external = is_sent_external
            if external_lab_name is not _UNSET:
                order.external_lab_name = external_lab_name  # type: ignore[assignment]
            return replace(order)

    def get_results_by_order(self, order_id: str) -> List[LabTestParameterResult]:
        with self._lock:
            return [replace(result) for result in self._lab_results.values() if result.order_id == order_id]

    def record_result(
        self,
        order_id: str,
        parameter_id: str,
        value: float,
        unit_override: Optional[str] = None,
    ) -> LabTestParameterResult:
        with self._lock:
            self.get_order(order_id)
            for result in self._lab_results.values():
                if result.order_id == order_id and result.parameter_id == parameter_id:
                    raise ConflictError(
                        f"Result for parameter {parameter_id} already recorded on order {order_id}"
                    )
            result = LabTestParameterResult(
                result_id=self._next_id("result"),
                order_id=order_id,
                parameter_id=parameter_id,
                value=value,
                unit_override=unit_override,
            )
            self._lab_results[result.result_id] = result
            return replace(result)

    def update_result(
        self,
        result_id: str,
        value: float,
        unit_override: Optional[str] = None,
    ) -> LabTestParameterResult:
        with self._lock:
            result = self._lab_results.get(result_id)
            if result is None:
                raise NotFoundError(f"Lab result '{result_id}' does not exist")
            result.value = value
            result.unit_override = unit_override
            return replace(result)

    def upload_attachment(self, order_id: str, filename: str, content: bytes) -> Attachment:
        if not filename:
            raise ValidationError("filename is required")
        with self._lock:
            self.get_order(order_id)
            attachment = Attachment(
                attachment_id=self._next_id("attachment"),
                order_id=order_id,
                filename=filename,
                url=f"memory://lab-attachments/{order_id}/{filename}",
            )
            self._attachments[order_id].append(attachment)
            logger.debug("Stored %d byte attachment %s for order %s", len(content), filename, order_id)
            return attachment

    def get_attachments(self, order_id: str) -> List[Attachment]:
        with self._lock:
            return list(self._attachments.get(order_id, []))

    # Notifications

    def send_diagnosis_record(self, diagnosis_id: str) -> None:
        with self._lock:
            if self.get_diagnosis_by_id(diagnosis_id) is None:
                raise NotFoundError(f"Diagnosis record '{diagnosis_id}' does not exist")
            self.sent_notifications.append(diagnosis_id)


__all__ = ["InMemoryClinicStore"]
