import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from agents.slots import SlotAllocator
from connector.memory import InMemoryClinicStore
from ui.dashboard import create_app

SLOT_TIME = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


class DashboardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.task_log = Path(self.tmp.name) / "task_log.json"
        self.store = InMemoryClinicStore()
        allocator = SlotAllocator(self.store)
        allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        allocator.allocate("doctor-1", SLOT_TIME, "appt-b")
        self.order = self.store.create_lab_order("cbc", owner_appointment_id="appt-a")
        self.client = create_app(self.store, self.task_log).test_client()

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_slots_for_day(self) -> None:
        response = self.client.get("/slots/doctor-1?date=2025-03-01")

        self.assertEqual(response.status_code, 200)
        slots = response.get_json()
        self.assertEqual(len(slots), 1)
        self.assertEqual(slots[0]["occupied"], 2)
        self.assertEqual(slots[0]["capacity"], 2)

    def test_slots_outside_day_are_excluded(self) -> None:
        response = self.client.get("/slots/doctor-1?date=2025-03-02")

        self.assertEqual(response.get_json(), [])

    def test_lab_orders_filtered_by_status(self) -> None:
        pending = self.client.get("/lab-orders?status=pending").get_json()
        completed = self.client.get("/lab-orders?status=COMPLETED").get_json()

        self.assertEqual([order["id"] for order in pending], [self.order.order_id])
        self.assertEqual(completed, [])

    def test_unknown_lab_status_is_a_bad_request(self) -> None:
        response = self.client.get("/lab-orders?status=LOST")

        self.assertEqual(response.status_code, 400)
        self.assertIn("LOST", response.get_json()["error"])

    def test_tasks_tolerates_missing_log(self) -> None:
        self.assertEqual(self.client.get("/tasks").get_json(), [])

    def test_tasks_returns_log_entries(self) -> None:
        self.task_log.write_text(json.dumps([{"task": "lab_backlog", "status": "success"}]), encoding="utf-8")

        self.assertEqual(self.client.get("/tasks").get_json(), [{"task": "lab_backlog", "status": "success"}])

    def test_dashboard_renders_board(self) -> None:
        response = self.client.get("/dashboard?date=2025-03-01&doctor=doctor-1")

        self.assertEqual(response.status_code, 200)
        body = response.get_data(as_text=True)
        self.assertIn("Clinic Operations Board", body)
        self.assertIn("appt-a / appt-b", body)
        self.assertIn(self.order.order_id, body)


if __name__ == "__main__":
    unittest.main()
