import json
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

import requests

from connector.clinic_client import ClinicAPIClient
from connector.errors import ConflictError, NotFoundError, TransientError, ValidationError
from connector.models import AppointmentStatus, Medicine

BASE_URL = "https://clinic.test"


def _response(status: int = 200, body=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.content = b"" if body is None else json.dumps(body).encode("utf-8")
    response.text = response.content.decode("utf-8")
    response.json.return_value = body
    return response


APPOINTMENT = {
    "id": "appt-1",
    "patientId": "patient-1",
    "doctorId": "doctor-1",
    "visitType": "OPD",
    "scheduledAt": "2025-03-01T10:00:00Z",
    "status": "SCHEDULED",
}


class ClinicAPIClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = MagicMock()
        self.client = ClinicAPIClient(base_url=f"{BASE_URL}/", token_url="", session=self.session)

    def test_response_envelope_is_unwrapped(self) -> None:
        self.session.request.return_value = _response(200, {"message": "ok", "data": APPOINTMENT})

        appointment = self.client.get_appointment("appt-1")

        self.assertEqual(appointment.appointment_id, "appt-1")
        self.assertIs(appointment.status, AppointmentStatus.SCHEDULED)
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["method"], "GET")
        self.assertEqual(kwargs["url"], f"{BASE_URL}/api/appointment/appt-1")
        self.assertNotIn("Authorization", kwargs["headers"])

    def test_error_statuses_map_to_clinic_errors(self) -> None:
        cases = [
            (404, NotFoundError),
            (409, ConflictError),
            (400, ValidationError),
            (422, ValidationError),
            (503, TransientError),
        ]
        for status, error in cases:
            with self.subTest(status=status):
                self.session.request.return_value = _response(status, {"message": "rejected"})
                with self.assertRaises(error) as ctx:
                    self.client.get_appointment("appt-1")
                self.assertIn("rejected", str(ctx.exception))

    def test_network_failure_is_transient(self) -> None:
        self.session.request.side_effect = requests.ConnectionError("connection refused")

        with self.assertRaises(TransientError):
            self.client.get_appointment("appt-1")

    def test_missing_surgery_returns_none(self) -> None:
        self.session.request.return_value = _response(404, {"message": "Surgery not found"})

        self.assertIsNone(self.client.get_surgery_by_appointment("appt-1"))

    def test_add_diagnosis_posts_record(self) -> None:
        self.session.request.return_value = _response(
            201,
            {
                "message": "created",
                "data": {
                    "id": "diagnosis-9",
                    "appointmentId": "appt-1",
                    "diagnosis": "Hypertension",
                    "medicines": [{"name": "Amlodipine", "frequency": "1-0-0"}],
                    "labTests": [{"id": "cbc"}],
                    "createdAt": "2025-03-01T10:30:00Z",
                },
            },
        )

        record = self.client.add_diagnosis(
            "appt-1",
            diagnosis="Hypertension",
            medicines=[Medicine(name="Amlodipine", frequency="1-0-0")],
            lab_test_refs=["cbc"],
        )

        self.assertEqual(record.record_id, "diagnosis-9")
        self.assertEqual(record.lab_test_refs, ("cbc",))
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["method"], "POST")
        self.assertEqual(kwargs["url"], f"{BASE_URL}/api/diagnosis/add-diagnosis")
        self.assertEqual(kwargs["params"], {"appointmentId": "appt-1"})
        self.assertEqual(kwargs["json"]["medicines"], [{"name": "Amlodipine", "frequency": "1-0-0"}])

    def test_find_slot_matches_exact_minute(self) -> None:
        self.session.request.return_value = _response(
            200,
            {
                "data": [
                    {"id": "slot-1", "doctorId": "doctor-1", "timeSlot": "2025-03-01T09:30:00Z", "appointment1Id": "a"},
                    {"id": "slot-2", "doctorId": "doctor-1", "timeSlot": "2025-03-01T09:31:00Z", "appointment1Id": "b"},
                ]
            },
        )

        slot = self.client.find_slot("doctor-1", datetime(2025, 3, 1, 9, 30, 15, tzinfo=timezone.utc))

        self.assertEqual(slot.slot_id, "slot-1")
        params = self.session.request.call_args.kwargs["params"]
        self.assertEqual(params["startDate"], "2025-03-01T09:30:00Z")

    def test_remote_appointment_search_needs_doctor_and_time(self) -> None:
        with self.assertRaises(ValidationError):
            self.client.find_appointments(patient_id="patient-1")
        self.session.request.assert_not_called()

    def test_notification_posts_to_record_route(self) -> None:
        self.session.request.return_value = _response(200, {"message": "sent"})

        self.client.send_diagnosis_record("diagnosis-9")

        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(kwargs["url"], f"{BASE_URL}/api/notifications/diagnosis-record/diagnosis-9")


class ClinicAPIClientAuthTests(unittest.TestCase):
    def test_token_is_fetched_once_and_sent_as_bearer(self) -> None:
        session = MagicMock()
        session.post.return_value = _response(200, {"access_token": "token-123", "expires_in": 3600})
        session.request.return_value = _response(200, {"data": APPOINTMENT})
        client = ClinicAPIClient(
            base_url=BASE_URL,
            token_url=f"{BASE_URL}/oauth/token",
            client_id="client",
            client_secret="secret",
            session=session,
        )

        client.get_appointment("appt-1")
        client.get_appointment("appt-1")

        session.post.assert_called_once()
        headers = session.request.call_args.kwargs["headers"]
        self.assertEqual(headers["Authorization"], "Bearer token-123")

    def test_token_url_requires_credentials(self) -> None:
        with self.assertRaises(ValueError):
            ClinicAPIClient(base_url=BASE_URL, token_url=f"{BASE_URL}/oauth/token", client_id=None, client_secret=None)

    def test_token_failure_is_transient(self) -> None:
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")
        client = ClinicAPIClient(
            base_url=BASE_URL,
            token_url=f"{BASE_URL}/oauth/token",
            client_id="client",
            client_secret="secret",
            session=session,
        )

        with self.assertRaises(TransientError):
            client.get_appointment("appt-1")


if __name__ == "__main__":
    unittest.main()
