import unittest
from datetime import date

from agents.lab_orders import LabOrderLifecycle, ResultFlag
from connector.errors import (
    IncompleteResultsError,
    InvalidTransitionError,
    MissingAttachmentError,
    NotFoundError,
    ValidationError,
)
from connector.memory import InMemoryClinicStore
from connector.models import LabOrderStatus, LabTestParameter

CBC_PARAMETERS = [
    LabTestParameter("param-hb", "cbc", "Hemoglobin", "g/dL", 12.0, 16.0),
    LabTestParameter("param-wbc", "cbc", "White Cells", "10^9/L", 4.0, 11.0),
    LabTestParameter("param-plt", "cbc", "Platelets", "10^9/L", 150.0, 400.0),
]


class LabOrderLifecycleTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryClinicStore()
        self.store.register_lab_test("cbc", CBC_PARAMETERS)
        self.order = self.store.create_lab_order("cbc", owner_appointment_id="appt-1")
        self.lifecycle = LabOrderLifecycle(self.store)

    def _record_all(self) -> None:
        self.lifecycle.record_result(self.order.order_id, "param-hb", 13.5)
        self.lifecycle.record_result(self.order.order_id, "param-wbc", 6.2)
        self.lifecycle.record_result(self.order.order_id, "param-plt", 250)

    def test_new_order_is_pending_and_internal(self) -> None:
        self.assertIs(self.order.status, LabOrderStatus.PENDING)
        self.assertFalse(self.order.is_sent_external)

    def test_start_processing_only_from_pending(self) -> None:
        order = self.lifecycle.start_processing(self.order.order_id)
        self.assertIs(order.status, LabOrderStatus.PROCESSING)

        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.start_processing(self.order.order_id)

    def test_tentative_date_promotes_pending_order(self) -> None:
        order = self.lifecycle.set_tentative_date(self.order.order_id, date(2025, 3, 4))

        self.assertIs(order.status, LabOrderStatus.PROCESSING)
        self.assertEqual(order.tentative_report_date, date(2025, 3, 4))

    def test_tentative_date_is_required(self) -> None:
        with self.assertRaises(ValidationError):
            self.lifecycle.set_tentative_date(self.order.order_id, None)

    def test_external_referral_requires_processing(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.mark_external(self.order.order_id, "City Diagnostics")

        self.lifecycle.start_processing(self.order.order_id)
        order = self.lifecycle.mark_external(self.order.order_id, " City Diagnostics ")

        self.assertTrue(order.is_sent_external)
        self.assertIs(order.status, LabOrderStatus.PROCESSING)
        self.assertEqual(order.external_lab_name, "City Diagnostics")

    def test_external_referral_requires_lab_name(self) -> None:
        self.lifecycle.start_processing(self.order.order_id)
        with self.assertRaises(ValidationError):
            self.lifecycle.mark_external(self.order.order_id, "   ")

    def test_bringing_order_back_in_house_without_date_resets_to_pending(self) -> None:
        self.lifecycle.start_processing(self.order.order_id)
        self.lifecycle.mark_external(self.order.order_id, "City Diagnostics")

        order = self.lifecycle.mark_internal(self.order.order_id)

        self.assertFalse(order.is_sent_external)
        self.assertIsNone(order.external_lab_name)
        self.assertIs(order.status, LabOrderStatus.PENDING)

    def test_bringing_order_back_in_house_with_date_stays_processing(self) -> None:
        self.lifecycle.set_tentative_date(self.order.order_id, date(2025, 3, 4))
        self.lifecycle.mark_external(self.order.order_id, "City Diagnostics")

        order = self.lifecycle.mark_internal(self.order.order_id)

        self.assertIs(order.status, LabOrderStatus.PROCESSING)

    def test_bringing_internal_order_in_house_is_rejected(self) -> None:
        self.lifecycle.start_processing(self.order.order_id)

        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.mark_internal(self.order.order_id)

        order = self.store.get_order(self.order.order_id)
        self.assertIs(order.status, LabOrderStatus.PROCESSING)
        self.assertFalse(order.is_sent_external)

    def test_record_result_rejects_non_numeric_value(self) -> None:
        with self.assertRaises(ValidationError):
            self.lifecycle.record_result(self.order.order_id, "param-hb", "Positive")

        self.assertEqual(self.store.get_results_by_order(self.order.order_id), [])

    def test_record_result_stores_numeric_text_as_float(self) -> None:
        result = self.lifecycle.record_result(self.order.order_id, "param-hb", "13.5")

        self.assertEqual(result.value, 13.5)
        self.assertIsInstance(result.value, float)

    def test_record_result_rejects_unknown_parameter(self) -> None:
        with self.assertRaises(NotFoundError):
            self.lifecycle.record_result(self.order.order_id, "param-missing", 1.0)

    def test_record_result_overwrites_previous_value(self) -> None:
        self.lifecycle.record_result(self.order.order_id, "param-hb", 11.0)
        self.lifecycle.record_result(self.order.order_id, "param-hb", 13.0, "mmol/L")

        results = self.store.get_results_by_order(self.order.order_id)
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].value, 13.0)
        self.assertEqual(results[0].unit_override, "mmol/L")

    def test_complete_with_missing_value_reports_parameter(self) -> None:
        self.lifecycle.start_processing(self.order.order_id)
        self.lifecycle.record_result(self.order.order_id, "param-hb", 13.5)
        self.lifecycle.record_result(self.order.order_id, "param-wbc", 6.2)
        self.lifecycle.attach_document(self.order.order_id, "report.pdf", b"%PDF")

        with self.assertRaises(IncompleteResultsError) as ctx:
            self.lifecycle.complete(self.order.order_id)

        self.assertEqual(ctx.exception.missing_parameters, ["Platelets"])
        self.assertFalse(ctx.exception.attachment_missing)
        self.assertIs(self.store.get_order(self.order.order_id).status, LabOrderStatus.PROCESSING)

    def test_complete_without_attachment_is_rejected(self) -> None:
        self._record_all()

        with self.assertRaises(MissingAttachmentError) as ctx:
            self.lifecycle.complete(self.order.order_id)

        self.assertTrue(ctx.exception.attachment_missing)
        self.assertEqual(ctx.exception.missing_parameters, [])

    def test_complete_with_both_gaps_reports_both(self) -> None:
        with self.assertRaises(IncompleteResultsError) as ctx:
            self.lifecycle.complete(self.order.order_id)

        self.assertEqual(len(ctx.exception.missing_parameters), 3)
        self.assertTrue(ctx.exception.attachment_missing)

    def test_completed_order_is_terminal(self) -> None:
        self.lifecycle.start_processing(self.order.order_id)
        self._record_all()
        self.lifecycle.attach_document(self.order.order_id, "report.pdf", b"%PDF")

        order = self.lifecycle.complete(self.order.order_id)
        self.assertIs(order.status, LabOrderStatus.COMPLETED)

        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.record_result(self.order.order_id, "param-hb", 14.0)
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.attach_document(self.order.order_id, "second.pdf", b"%PDF")
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.mark_external(self.order.order_id, "City Diagnostics")
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.set_tentative_date(self.order.order_id, date(2025, 3, 9))
        with self.assertRaises(InvalidTransitionError):
            self.lifecycle.complete(self.order.order_id)

    def test_completeness_report(self) -> None:
        self.lifecycle.record_result(self.order.order_id, "param-hb", 13.5)
        self.lifecycle.attach_document(self.order.order_id, "report.pdf", b"%PDF")

        report = self.lifecycle.completeness(self.order.order_id)

        self.assertEqual(report.missing_parameters, ["White Cells", "Platelets"])
        self.assertEqual(report.attachment_count, 1)
        self.assertFalse(report.is_complete)

    def test_interpret_results_flags_out_of_range_values(self) -> None:
        self.lifecycle.record_result(self.order.order_id, "param-hb", 10.1)
        self.lifecycle.record_result(self.order.order_id, "param-wbc", 6.2)
        self.lifecycle.record_result(self.order.order_id, "param-plt", 520)

        flags = {reading.name: reading.flag for reading in self.lifecycle.interpret_results(self.order.order_id)}

        self.assertEqual(
            flags,
            {"Hemoglobin": ResultFlag.LOW, "White Cells": ResultFlag.NORMAL, "Platelets": ResultFlag.HIGH},
        )

    def test_list_orders_filters_by_status(self) -> None:
        other = self.store.create_lab_order("cbc", external_order_id="ext-9")
        self.lifecycle.start_processing(other.order_id)

        pending = self.lifecycle.list_orders(LabOrderStatus.PENDING)

        self.assertEqual([order.order_id for order in pending], [self.order.order_id])


if __name__ == "__main__":
    unittest.main()
