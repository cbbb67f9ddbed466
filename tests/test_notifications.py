import unittest
from unittest.mock import MagicMock

from agents.notifications import NotificationDispatcher, NotificationOutbox


class NotificationDispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = MagicMock()
        self.dispatcher = NotificationDispatcher(self.service)

    def test_successful_dispatch(self) -> None:
        outcome = self.dispatcher.dispatch("diagnosis-1")

        self.assertTrue(outcome.ok)
        self.assertIsNone(outcome.error)
        self.service.send_diagnosis_record.assert_called_once_with("diagnosis-1")

    def test_failures_are_reported_not_raised(self) -> None:
        self.service.send_diagnosis_record.side_effect = ConnectionError("gateway unreachable")

        outcome = self.dispatcher.dispatch("diagnosis-1")

        self.assertFalse(outcome.ok)
        self.assertEqual(outcome.error, "gateway unreachable")


class NotificationOutboxTests(unittest.TestCase):
    def test_drain_attempts_each_record_once(self) -> None:
        service = MagicMock()
        service.send_diagnosis_record.side_effect = [None, RuntimeError("bounced")]
        dispatcher = NotificationDispatcher(service)
        outbox = NotificationOutbox()
        outbox.enqueue("diagnosis-1")
        outbox.enqueue("diagnosis-2")

        outcomes = outbox.drain(dispatcher)

        self.assertEqual([outcome.ok for outcome in outcomes], [True, False])
        self.assertEqual(len(outbox), 0)
        self.assertEqual(outbox.drain(dispatcher), [])
        self.assertEqual(service.send_diagnosis_record.call_count, 2)

    def test_enqueue_reports_queued_outcome(self) -> None:
        outcome = NotificationOutbox().enqueue("diagnosis-1")

        self.assertTrue(outcome.ok)
        self.assertTrue(outcome.queued)

    def test_take_all_empties_queue_without_delivery(self) -> None:
        outbox = NotificationOutbox()
        outbox.enqueue("diagnosis-1")

        self.assertEqual(outbox.take_all(), ["diagnosis-1"])
        self.assertEqual(len(outbox), 0)


if __name__ == "__main__":
    unittest.main()
