import threading
import unittest
from datetime import datetime, timedelta, timezone

from agents.slots import SlotAllocator
from connector.errors import NotFoundError, SlotFullError, ValidationError
from connector.memory import InMemoryClinicStore

SLOT_TIME = datetime(2025, 3, 1, 9, 30, 42, tzinfo=timezone.utc)


class SlotAllocatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryClinicStore()
        self.allocator = SlotAllocator(self.store)

    def test_first_allocation_creates_slot(self) -> None:
        slot = self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")

        self.assertEqual(slot.appointment1_id, "appt-a")
        self.assertIsNone(slot.appointment2_id)
        self.assertEqual(slot.time_slot, SLOT_TIME.replace(second=0))

    def test_second_allocation_in_same_minute_fills_second_side(self) -> None:
        first = self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        second = self.allocator.allocate("doctor-1", SLOT_TIME + timedelta(seconds=10), "appt-b")

        self.assertEqual(first.slot_id, second.slot_id)
        self.assertEqual(second.appointment_ids, ["appt-a", "appt-b"])
        self.assertEqual(len(self.store.get_slots("doctor-1")), 1)

    def test_full_slot_rejects_third_appointment(self) -> None:
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-b")

        with self.assertRaises(SlotFullError) as ctx:
            self.allocator.allocate("doctor-1", SLOT_TIME, "appt-c")

        self.assertEqual(ctx.exception.doctor_id, "doctor-1")
        slot = self.store.find_slot("doctor-1", SLOT_TIME)
        self.assertEqual(slot.appointment_ids, ["appt-a", "appt-b"])

    def test_allocating_same_appointment_twice_is_a_no_op(self) -> None:
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        slot = self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")

        self.assertEqual(slot.appointment_ids, ["appt-a"])

    def test_equivalent_instants_in_other_timezones_share_a_slot(self) -> None:
        local = SLOT_TIME.astimezone(timezone(timedelta(hours=5, minutes=30)))
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        slot = self.allocator.allocate("doctor-1", local, "appt-b")

        self.assertEqual(slot.appointment_ids, ["appt-a", "appt-b"])

    def test_other_doctor_and_minute_use_separate_slots(self) -> None:
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        self.allocator.allocate("doctor-1", SLOT_TIME + timedelta(minutes=1), "appt-b")
        self.allocator.allocate("doctor-2", SLOT_TIME, "appt-c")

        self.assertEqual(len(self.store.get_slots("doctor-1")), 2)
        self.assertEqual(len(self.store.get_slots("doctor-2")), 1)

    def test_blank_identifiers_are_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.allocator.allocate("", SLOT_TIME, "appt-a")
        with self.assertRaises(ValidationError):
            self.allocator.allocate("doctor-1", SLOT_TIME, "  ")

    def test_concurrent_allocations_never_exceed_capacity(self) -> None:
        workers = 8
        barrier = threading.Barrier(workers)
        allocated = []
        rejected = []
        lock = threading.Lock()

        def book(index: int) -> None:
            barrier.wait()
            try:
                self.allocator.allocate("doctor-1", SLOT_TIME, f"appt-{index}")
            except SlotFullError:
                with lock:
                    rejected.append(index)
            else:
                with lock:
                    allocated.append(index)

        threads = [threading.Thread(target=book, args=(index,)) for index in range(workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(allocated), 2)
        self.assertEqual(len(rejected), workers - 2)
        slot = self.store.find_slot("doctor-1", SLOT_TIME)
        self.assertEqual(sorted(slot.appointment_ids), sorted(f"appt-{index}" for index in allocated))

    def test_has_capacity_tracks_occupancy(self) -> None:
        self.assertTrue(self.allocator.has_capacity("doctor-1", SLOT_TIME))
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        self.assertTrue(self.allocator.has_capacity("doctor-1", SLOT_TIME))
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-b")
        self.assertFalse(self.allocator.has_capacity("doctor-1", SLOT_TIME))

    def test_get_slots_filters_range_newest_first(self) -> None:
        for offset, appointment_id in enumerate(("appt-a", "appt-b", "appt-c")):
            self.allocator.allocate("doctor-1", SLOT_TIME + timedelta(hours=offset), appointment_id)

        slots = self.allocator.get_slots("doctor-1", SLOT_TIME, SLOT_TIME + timedelta(hours=1))

        self.assertEqual([slot.appointment1_id for slot in slots], ["appt-b", "appt-a"])

    def test_get_slots_rejects_inverted_range(self) -> None:
        with self.assertRaises(ValidationError):
            self.allocator.get_slots("doctor-1", SLOT_TIME + timedelta(hours=1), SLOT_TIME)


class SlotRescheduleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryClinicStore()
        self.allocator = SlotAllocator(self.store)
        self.later = SLOT_TIME + timedelta(hours=2)

    def test_lone_appointment_moves_its_slot(self) -> None:
        original = self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")

        moved = self.allocator.reschedule("doctor-1", "appt-a", self.later)

        self.assertEqual(moved.slot_id, original.slot_id)
        self.assertEqual(moved.time_slot, self.later.replace(second=0))
        self.assertIsNone(self.store.find_slot("doctor-1", SLOT_TIME))

    def test_shared_slot_keeps_partner_on_first_side(self) -> None:
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-b")

        target = self.allocator.reschedule("doctor-1", "appt-a", self.later)

        self.assertEqual(target.appointment_ids, ["appt-a"])
        remaining = self.store.find_slot("doctor-1", SLOT_TIME)
        self.assertEqual(remaining.appointment1_id, "appt-b")
        self.assertIsNone(remaining.appointment2_id)

    def test_full_target_keeps_current_placement(self) -> None:
        self.allocator.allocate("doctor-1", self.later, "appt-a")
        self.allocator.allocate("doctor-1", self.later, "appt-b")
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-c")

        with self.assertRaises(SlotFullError):
            self.allocator.reschedule("doctor-1", "appt-c", self.later)

        self.assertTrue(self.store.find_slot("doctor-1", SLOT_TIME).holds("appt-c"))

    def test_vacated_slot_is_hidden_and_reusable(self) -> None:
        self.allocator.allocate("doctor-1", SLOT_TIME, "appt-a")
        self.allocator.allocate("doctor-1", self.later, "appt-b")

        self.allocator.reschedule("doctor-1", "appt-a", self.later)

        self.assertEqual(len(self.allocator.get_slots("doctor-1")), 1)
        slot = self.allocator.allocate("doctor-1", SLOT_TIME, "appt-c")
        self.assertEqual(slot.appointment_ids, ["appt-c"])

    def test_unknown_appointment_raises_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            self.allocator.reschedule("doctor-1", "appt-missing", self.later)


if __name__ == "__main__":
    unittest.main()
