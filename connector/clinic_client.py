"""Clinic API client utilities.

This module provides a high-level client for the clinic administration REST
API. The client manages OAuth2 authentication, HTTP session handling with
retries, and translation of error responses into the clinic error taxonomy
so the workflow agents can run against the remote API exactly as they run
against :class:`connector.memory.InMemoryClinicStore`.
"""
from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

import requests
from requests import Response
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import ConflictError, NotFoundError, TransientError, ValidationError
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

__all__ = ["ClinicAPIClient", "TokenData"]


logger = logging.getLogger(__name__)


DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS = 60
DEFAULT_TIMEOUT_SECONDS = int(os.getenv("CLINIC_API_TIMEOUT", "30"))
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5

DEFAULT_BASE_URL = os.getenv("CLINIC_API_BASE_URL", "http://localhost:8000")
DEFAULT_TOKEN_URL = os.getenv("CLINIC_TOKEN_URL", "")
DEFAULT_CLIENT_ID = os.getenv("CLINIC_CLIENT_ID")
DEFAULT_CLIENT_SECRET = os.getenv("CLINIC_CLIENT_SECRET")
DEFAULT_SCOPE = os.getenv("CLINIC_SCOPE", "")

_UNSET = object()


@dataclass(frozen=True)
class TokenData:
    """Container for OAuth2 token information."""

    access_token: str
    expires_at: datetime

    def is_valid(self, buffer_seconds: int) -> bool:
        return datetime.now(timezone.utc) + timedelta(seconds=buffer_seconds) < self.expires_at


def _iso(value: Optional[Union[date, datetime]]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return value.isoformat()


class ClinicAPIClient:
    """Client for the clinic administration API.

    Authentication is optional: when ``token_url`` is empty the client sends
    requests without a bearer token, which suits deployments that sit behind
    an authenticating gateway.
    """

    def __init__(
        self,
        *,
        base_url: str = DEFAULT_BASE_URL,
        token_url: str = DEFAULT_TOKEN_URL,
        client_id: Optional[str] = DEFAULT_CLIENT_ID,
        client_secret: Optional[str] = DEFAULT_CLIENT_SECRET,
        scope: Optional[str] = DEFAULT_SCOPE,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        token_refresh_buffer: int = DEFAULT_TOKEN_REFRESH_BUFFER_SECONDS,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")
        if token_url and (not client_id or not client_secret):
            raise ValueError("client_id and client_secret must be provided when token_url is set")

        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = scope or ""
        self.timeout = timeout
        self.token_refresh_buffer = token_refresh_buffer

        self._session = session or self._build_session(max_retries=max_retries, backoff_factor=backoff_factor)
        self._token_lock = threading.Lock()
        self._token: Optional[TokenData] = None

    @staticmethod
    def _build_session(*, max_retries: int, backoff_factor: float) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            read=max_retries,
            connect=max_retries,
            status=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=(429, 500, 502, 503, 504),
            # POST and PATCH are not replayed.
            allowed_methods=("GET", "PUT", "DELETE", "OPTIONS"),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    @contextmanager
    def transaction(self) -> Iterator["ClinicAPIClient"]:
        # Atomicity of a single remote call is the server's concern.
        yield self

    def _get_access_token(self) -> Optional[str]:
        if not self.token_url:
            return None
        token = self._token
        if token and token.is_valid(self.token_refresh_buffer):
            return token.access_token

        with self._token_lock:
            token = self._token
            if token and token.is_valid(self.token_refresh_buffer):
                return token.access_token

            logger.debug("Refreshing clinic API OAuth2 token")
            payload = {
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            }
            if self.scope:
                payload["scope"] = self.scope
            try:
                response = self._session.post(self.token_url, data=payload, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
            except requests.RequestException as exc:
                logger.error("Failed to obtain clinic API token: %s", exc)
                raise TransientError("Failed to obtain clinic API token") from exc
            except ValueError as exc:
                logger.error("Invalid token response received from clinic API: %s", exc)
                raise TransientError("Invalid token response from clinic API") from exc

            access_token = data.get("access_token")
            if not access_token or not isinstance(access_token, str):
                raise TransientError("Token response missing access_token")
            try:
                expires_in = int(data.get("expires_in") or 300)
            except (TypeError, ValueError) as exc:
                raise TransientError("Invalid expires_in value in token response") from exc

            token = TokenData(
                access_token=access_token,
                expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            )
            self._token = token
            logger.info("Clinic API token refreshed; expires at %s", token.expires_at.isoformat())
            return token.access_token

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_payload: Optional[Dict[str, Any]] = None,
        files: Optional[Dict[str, Any]] = None,
        expected_status: Union[int, Tuple[int, ...]] = (200, 201),
    ) -> Any:
        """Send a request and return the ``data`` member of the response envelope."""

        if isinstance(expected_status, int):
            expected_status = (expected_status,)

        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {"Accept": "application/json"}
        token = self._get_access_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                params={k: v for k, v in (params or {}).items() if v is not None} or None,
                json=json_payload,
                files=files,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("Request to clinic API failed: %s %s: %s", method.upper(), url, exc)
            raise TransientError(f"Failed to execute {method.upper()} {path}") from exc

        if response.status_code not in expected_status:
            raise self._error_for(response)

        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientError(f"Clinic API returned invalid JSON for {path}") from exc
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body

    @staticmethod
    def _error_for(response: Response) -> Exception:
        message = response.text[:2048]
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            message = str(body["message"])

        status = response.status_code
        logger.error("Clinic API error response: status=%s message=%s", status, message)
        if status in (400, 422):
            return ValidationError(message)
        if status == 404:
            return NotFoundError(message)
        if status == 409:
            return ConflictError(message)
        return TransientError(f"Clinic API responded with status {status}: {message}")

    # Slots

    def get_slots(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DoctorSlot]:
        params: Dict[str, Any] = {}
        if start and end:
            params = {"startDate": _iso(start), "endDate": _iso(end)}
        data = self._request("GET", f"/api/doctor/get-slots/{doctor_id}", params=params)
        slots = [DoctorSlot.from_dict(item) for item in data or []]
        return sorted(slots, key=lambda slot: slot.time_slot, reverse=True)

    def find_slot(self, doctor_id: str, time_slot: datetime) -> Optional[DoctorSlot]:
        key = normalize_time_slot(time_slot)
        for slot in self.get_slots(doctor_id, key, key + timedelta(seconds=59)):
            if slot.time_slot == key:
                return slot
        return None

    def find_slot_by_appointment(self, doctor_id: str, appointment_id: str) -> Optional[DoctorSlot]:
        for slot in self.get_slots(doctor_id):
            if slot.holds(appointment_id):
                return slot
        return None

    def add_slot(self, doctor_id: str, appointment1_id: str, time_slot: datetime) -> DoctorSlot:
        data = self._request(
            "POST",
            f"/api/doctor/add-slot/{doctor_id}",
            json_payload={"appointment1Id": appointment1_id, "timeSlot": _iso(normalize_time_slot(time_slot))},
        )
        return DoctorSlot.from_dict(data)

    def update_slot(
        self,
        slot_id: str,
        *,
        appointment1_id: object = _UNSET,
        appointment2_id: object = _UNSET,
        time_slot: Optional[datetime] = None,
    ) -> DoctorSlot:
        payload: Dict[str, Any] = {}
        if appointment1_id is not _UNSET:
            payload["appointment1Id"] = appointment1_id
        if appointment2_id is not _UNSET:
            payload["appointment2Id"] = appointment2_id
        if time_slot is not None:
            payload["timeSlot"] = _iso(normalize_time_slot(time_slot))
        data = self._request("PATCH", f"/api/doctor/update-slot/{slot_id}", json_payload=payload)
        return DoctorSlot.from_dict(data)

    # Appointments

    def book_appointment(
        self,
        patient_id: str,
        doctor_id: str,
        visit_type: VisitType,
        scheduled_at: datetime,
        status: AppointmentStatus = AppointmentStatus.PENDING,
    ) -> Appointment:
        data = self._request(
            "POST",
            "/api/appointment/book",
            json_payload={
                "patientId": patient_id,
                "doctorId": doctor_id,
                "visitType": VisitType(visit_type).value,
                "scheduledAt": _iso(scheduled_at),
                "status": AppointmentStatus(status).value,
            },
        )
        return Appointment.from_dict(data)

    def get_appointment(self, appointment_id: str) -> Appointment:
        data = self._request("GET", f"/api/appointment/{appointment_id}")
        if not data:
            raise NotFoundError(f"Appointment '{appointment_id}' does not exist")
        return Appointment.from_dict(data)

    def find_appointments(
        self,
        *,
        patient_id: Optional[str] = None,
        doctor_id: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
        visit_type: Optional[VisitType] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> List[Appointment]:
        if not doctor_id or scheduled_at is None:
            raise ValidationError("doctor_id and scheduled_at are required to search appointments remotely")
        data = self._request(
            "GET",
            "/api/appointment/get-by-date-and-doctor",
            params={"date": scheduled_at.date().isoformat(), "doctorId": doctor_id},
        )
        minute = normalize_time_slot(scheduled_at)
        appointments = [Appointment.from_dict(item) for item in data or []]
        return [
            appointment
            for appointment in appointments
            if (patient_id is None or appointment.patient_id == patient_id)
            and normalize_time_slot(appointment.scheduled_at) == minute
            and (visit_type is None or appointment.visit_type is visit_type)
            and (status is None or appointment.status is status)
        ]

    def update_status(self, appointment_id: str, status: AppointmentStatus) -> Appointment:
        data = self._request(
            "PATCH",
            f"/api/appointment/update-status/{appointment_id}",
            json_payload={"status": AppointmentStatus(status).value},
        )
        if data:
            return Appointment.from_dict(data)
        return self.get_appointment(appointment_id)

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
        payload: Dict[str, Any] = {
            "appointmentId": appointment_id,
            "category": category,
            "status": SurgicalStatus(status).value,
        }
        if description:
            payload["description"] = description
        if scheduled_at:
            payload["scheduledAt"] = _iso(scheduled_at)
        data = self._request("POST", "/api/appointment/add-surgery", json_payload=payload)
        return Surgery.from_dict(data)

    def get_surgery_by_appointment(self, appointment_id: str) -> Optional[Surgery]:
        try:
            data = self._request("GET", f"/api/appointment/get-surgery-by-appointment-id/{appointment_id}")
        except NotFoundError:
            return None
        return Surgery.from_dict(data) if data else None

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
        data = self._request(
            "POST",
            "/api/diagnosis/add-diagnosis",
            params={"appointmentId": appointment_id},
            json_payload={
                "diagnosis": diagnosis,
                "notes": notes,
                "medicines": [medicine.to_dict() for medicine in medicines],
                "labTests": [{"id": ref} for ref in lab_test_refs],
                "followUpAppointmentId": follow_up_appointment_id,
            },
        )
        return DiagnosisRecord.from_dict(data)

    def get_diagnosis(self, appointment_id: str) -> Optional[DiagnosisRecord]:
        try:
            data = self._request("GET", f"/api/diagnosis/get-by-appointment/{appointment_id}")
        except NotFoundError:
            return None
        return DiagnosisRecord.from_dict(data) if data else None

    # Lab orders

    def get_parameters_by_lab_test(self, lab_test_id: str) -> List[LabTestParameter]:
        data = self._request("GET", f"/api/lab/tests/{lab_test_id}/parameters")
        return [LabTestParameter.from_dict(item) for item in data or []]

    def get_order(self, order_id: str) -> LabTestOrder:
        data = self._request("GET", f"/api/lab/orders/{order_id}")
        if not data:
            raise NotFoundError(f"Lab order '{order_id}' does not exist")
        return LabTestOrder.from_dict(data)

    def list_orders(self, status: Optional[LabOrderStatus] = None) -> List[LabTestOrder]:
        data = self._request("GET", "/api/lab/hospitals/orders")
        orders = [LabTestOrder.from_dict(item) for item in data or []]
        return [order for order in orders if status is None or order.status is status]

    def update_order(
        self,
        order_id: str,
        *,
        status: Optional[LabOrderStatus] = None,
        tentative_report_date: object = _UNSET,
        is_sent_external: Optional[bool] = None,
        external_lab_name: object = _UNSET,
    ) -> LabTestOrder:
        payload: Dict[str, Any] = {}
        if status is not None:
            payload["status"] = LabOrderStatus(status).value
        if tentative_report_date is not _UNSET:
            payload["tentativeReportDate"] = _iso(tentative_report_date)  # type: ignore[arg-type]
        if is_sent_external is not None:
            payload["isSentExternal"] = is_sent_external
        if external_lab_name is not _UNSET:
            payload["externalLabName"] = external_lab_name
        data = self._request("PATCH", f"/api/lab/orders/{order_id}", json_payload=payload)
        if data:
            return LabTestOrder.from_dict(data)
        return self.get_order(order_id)

    def get_results_by_order(self, order_id: str) -> List[LabTestParameterResult]:
        data = self._request("GET", f"/api/lab/orders/{order_id}/results")
        return [LabTestParameterResult.from_dict(item) for item in data or []]

    def record_result(
        self,
        order_id: str,
        parameter_id: str,
        value: float,
        unit_override: Optional[str] = None,
    ) -> LabTestParameterResult:
        data = self._request(
            "POST",
            "/api/lab/results",
            json_payload={
                "appointmentLabTestId": order_id,
                "parameterId": parameter_id,
                "value": value,
                "unitOverride": unit_override or "",
            },
        )
        return LabTestParameterResult.from_dict(data)

    def update_result(
        self,
        result_id: str,
        value: float,
        unit_override: Optional[str] = None,
    ) -> LabTestParameterResult:
        data = self._request(
            "PATCH",
            f"/api/lab/results/{result_id}",
            json_payload={"value": value, "unitOverride": unit_override or ""},
        )
        return LabTestParameterResult.from_dict(data)

    def upload_attachment(self, order_id: str, filename: str, content: bytes) -> Attachment:
        data = self._request(
            "POST",
            "/api/lab/upload/attachment",
            params={"appointmentLabTestId": order_id},
            files={"file": (filename, content)},
        )
        return Attachment.from_dict({"appointmentLabTestId": order_id, "filename": filename, **(data or {})})

    def get_attachments(self, order_id: str) -> List[Attachment]:
        data = self._request("GET", f"/api/lab/attachments/{order_id}")
        return [Attachment.from_dict({"appointmentLabTestId": order_id, **item}) for item in data or []]

    # Notifications

    def send_diagnosis_record(self, diagnosis_id: str) -> None:
        self._request("POST", f"/api/notifications/diagnosis-record/{diagnosis_id}")
