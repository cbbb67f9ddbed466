"""Domain records exchanged between the clinic stores and the agents."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


class AppointmentStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    DIAGNOSED = "DIAGNOSED"
    CANCELLED = "CANCELLED"


class VisitType(str, Enum):
    OPD = "OPD"
    IPD = "IPD"
    ER = "ER"
    FOLLOW_UP = "FOLLOW_UP"


class SurgicalStatus(str, Enum):
    NOT_REQUIRED = "NOT_REQUIRED"
    NOT_CONFIRMED = "NOT_CONFIRMED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class LabOrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"


APPOINTMENT_TRANSITIONS: Dict[AppointmentStatus, FrozenSet[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.DIAGNOSED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset({AppointmentStatus.DIAGNOSED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.DIAGNOSED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

DEFAULT_SURGERY_DESCRIPTION = "No description provided"


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in APPOINTMENT_TRANSITIONS[current]


def normalize_time_slot(moment: datetime) -> datetime:
    """Return ``moment`` in UTC truncated to minute precision.

    Naive datetimes are treated as UTC. Two timestamps address the same
    doctor slot exactly when their normalised values are equal.
    """

    if not isinstance(moment, datetime):
        raise TypeError("time slot must be a datetime instance")
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).replace(second=0, microsecond=0)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"Unsupported datetime value: {value!r}")


def parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return parse_datetime(value).date()
    raise ValueError(f"Unsupported date value: {value!r}")


def _isoformat(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class DoctorSlot:
    """Two-sided booking bucket for one doctor at one minute."""

    slot_id: str
    doctor_id: str
    time_slot: datetime
    appointment1_id: Optional[str]
    appointment2_id: Optional[str] = None

    @property
    def appointment_ids(self) -> List[str]:
        return [value for value in (self.appointment1_id, self.appointment2_id) if value]

    @property
    def is_full(self) -> bool:
        return bool(self.appointment1_id and self.appointment2_id)

    def holds(self, appointment_id: str) -> bool:
        return appointment_id in self.appointment_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.slot_id,
            "doctorId": self.doctor_id,
            "timeSlot": _isoformat(self.time_slot),
            "appointment1Id": self.appointment1_id,
            "appointment2Id": self.appointment2_id,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DoctorSlot":
        return cls(
            slot_id=str(payload["id"]),
            doctor_id=str(payload["doctorId"]),
            time_slot=normalize_time_slot(parse_datetime(payload["timeSlot"])),
            appointment1_id=payload.get("appointment1Id"),
            appointment2_id=payload.get("appointment2Id"),
        )


@dataclass
class Appointment:
    appointment_id: str
    patient_id: str
    doctor_id: str
    visit_type: VisitType
    scheduled_at: datetime
    status: AppointmentStatus = AppointmentStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.appointment_id,
            "patientId": self.patient_id,
            "doctorId": self.doctor_id,
            "visitType": self.visit_type.value,
            "scheduledAt": _isoformat(self.scheduled_at),
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Appointment":
        return cls(
            appointment_id=str(payload["id"]),
            patient_id=str(payload["patientId"]),
            doctor_id=str(payload["doctorId"]),
            visit_type=VisitType(payload.get("visitType", VisitType.OPD.value)),
            scheduled_at=parse_datetime(payload["scheduledAt"]),
            status=AppointmentStatus(payload.get("status", AppointmentStatus.PENDING.value)),
        )


@dataclass(frozen=True)
class Medicine:
    name: str
    frequency: str
    duration: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "frequency": self.frequency}
        if self.duration:
            payload["duration"] = self.duration
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Medicine":
        return cls(
            name=str(payload["name"]),
            frequency=str(payload.get("frequency", "")),
            duration=payload.get("duration") or None,
        )


@dataclass(frozen=True)
class DiagnosisRecord:
    """Immutable outcome of a consultation."""

    record_id: str
    appointment_id: str
    diagnosis: str
    notes: Optional[str] = None
    medicines: Tuple[Medicine, ...] = ()
    lab_test_refs: Tuple[str, ...] = ()
    follow_up_appointment_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.record_id,
            "appointmentId": self.appointment_id,
            "diagnosis": self.diagnosis,
            "notes": self.notes,
            "medicines": [medicine.to_dict() for medicine in self.medicines],
            "labTests": [{"id": ref} for ref in self.lab_test_refs],
            "followUpAppointmentId": self.follow_up_appointment_id,
            "createdAt": _isoformat(self.created_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DiagnosisRecord":
        created_at = parse_datetime(payload.get("createdAt")) or datetime.now(timezone.utc)
        return cls(
            record_id=str(payload["id"]),
            appointment_id=str(payload["appointmentId"]),
            diagnosis=str(payload["diagnosis"]),
            notes=payload.get("notes"),
            medicines=tuple(Medicine.from_dict(item) for item in payload.get("medicines") or []),
            lab_test_refs=tuple(str(item["id"]) for item in payload.get("labTests") or []),
            follow_up_appointment_id=payload.get("followUpAppointmentId"),
            created_at=created_at,
        )


@dataclass
class Surgery:
    surgery_id: str
    appointment_id: str
    category: str
    status: SurgicalStatus
    description: str = DEFAULT_SURGERY_DESCRIPTION
    scheduled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.surgery_id,
            "appointmentId": self.appointment_id,
            "category": self.category,
            "status": self.status.value,
            "description": self.description,
            "scheduledAt": _isoformat(self.scheduled_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Surgery":
        return cls(
            surgery_id=str(payload["id"]),
            appointment_id=str(payload["appointmentId"]),
            category=str(payload["category"]),
            status=SurgicalStatus(payload["status"]),
            description=payload.get("description") or DEFAULT_SURGERY_DESCRIPTION,
            scheduled_at=parse_datetime(payload.get("scheduledAt")),
        )


@dataclass
class LabTestOrder:
    """A single ordered lab test tracked through its lifecycle."""

    order_id: str
    lab_test_id: str
    status: LabOrderStatus = LabOrderStatus.PENDING
    is_sent_external: bool = False
    owner_appointment_id: Optional[str] = None
    external_order_id: Optional[str] = None
    tentative_report_date: Optional[date] = None
    external_lab_name: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is LabOrderStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.order_id,
            "labTestId": self.lab_test_id,
            "status": self.status.value,
            "isSentExternal": self.is_sent_external,
            "appointmentId": self.owner_appointment_id,
            "externalOrderId": self.external_order_id,
            "tentativeReportDate": _isoformat(self.tentative_report_date),
            "externalLabName": self.external_lab_name,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LabTestOrder":
        return cls(
            order_id=str(payload["id"]),
            lab_test_id=str(payload["labTestId"]),
            status=LabOrderStatus(payload.get("status", LabOrderStatus.PENDING.value)),
            is_sent_external=bool(payload.get("isSentExternal", False)),
            owner_appointment_id=payload.get("appointmentId"),
            external_order_id=payload.get("externalOrderId"),
            tentative_report_date=parse_date(payload.get("tentativeReportDate")),
            external_lab_name=payload.get("externalLabName"),
        )


@dataclass(frozen=True)
class LabTestParameter:
    """Catalog entry describing one measurable value of a lab test."""

    parameter_id: str
    lab_test_id: str
    name: str
    unit: Optional[str] = None
    lower_limit: Optional[float] = None
    upper_limit: Optional[float] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LabTestParameter":
        return cls(
            parameter_id=str(payload["id"]),
            lab_test_id=str(payload["labTestId"]),
            name=str(payload["name"]),
            unit=payload.get("unit"),
            lower_limit=payload.get("lowerLimit"),
            upper_limit=payload.get("upperLimit"),
        )


@dataclass
class LabTestParameterResult:
    result_id: str
    order_id: str
    parameter_id: str
    value: Optional[float]
    unit_override: Optional[str] = None

    @property
    def has_value(self) -> bool:
        if self.value is None:
            return False
        if isinstance(self.value, str) and not self.value.strip():
            return False
        return True

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "LabTestParameterResult":
        return cls(
            result_id=str(payload["id"]),
            order_id=str(payload["appointmentLabTestId"]),
            parameter_id=str(payload["parameterId"]),
            value=payload.get("value"),
            unit_override=payload.get("unitOverride") or None,
        )


@dataclass(frozen=True)
class Attachment:
    attachment_id: str
    order_id: str
    filename: str
    url: str

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Attachment":
        url = str(payload.get("url", ""))
        return cls(
            attachment_id=str(payload["id"]),
            order_id=str(payload.get("appointmentLabTestId", "")),
            filename=str(payload.get("filename") or url.rsplit("/", 1)[-1] or "Unknown"),
            url=url,
        )


__all__ = [
    "APPOINTMENT_TRANSITIONS",
    "Appointment",
    "AppointmentStatus",
    "Attachment",
    "DEFAULT_SURGERY_DESCRIPTION",
    "DiagnosisRecord",
    "DoctorSlot",
    "LabOrderStatus",
    "LabTestOrder",
    "LabTestParameter",
    "LabTestParameterResult",
    "Medicine",
    "Surgery",
    "SurgicalStatus",
    "VisitType",
    "can_transition",
    "normalize_time_slot",
    "parse_date",
    "parse_datetime",
]
