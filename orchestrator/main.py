"""Central orchestration entry point for the clinic episode workflows."""
from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
import time
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from agents.finalization import ConsultationFinalizationSaga, FinalizationRequest
from agents.lab_orders import LabOrderLifecycle
from agents.notifications import NotificationDispatcher, NotificationOutbox
from agents.slots import SlotAllocator
from connector.clinic_client import ClinicAPIClient
from connector.errors import ClinicError
from connector.models import LabOrderStatus

logger = logging.getLogger(__name__)

LOG_PATH = Path(os.getenv("CLINIC_TASK_LOG_PATH", str(Path(__file__).resolve().parent / "task_log.json")))
OUTBOX_PATH = Path(
    os.getenv("CLINIC_OUTBOX_PATH", str(Path(__file__).resolve().parent / "data" / "notification_outbox.json"))
)
NOTIFICATION_DRAIN_INTERVAL_SECONDS = int(os.getenv("NOTIFICATION_DRAIN_INTERVAL_SECONDS", "60"))
LAB_BACKLOG_INTERVAL_SECONDS = int(os.getenv("LAB_BACKLOG_INTERVAL_SECONDS", "900"))
OUTBOX_LOCK_TIMEOUT_SECONDS = float(os.getenv("CLINIC_OUTBOX_LOCK_TIMEOUT_SECONDS", "10"))


def _timestamp(moment: Optional[datetime] = None) -> str:
    """Render ``moment`` (default: now) as a second-precision UTC ``Z`` string."""

    moment = moment or datetime.now(UTC)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class TaskRun:
    """One job execution as written to the task log."""

    task: str
    status: str = "running"
    started_at: str = field(default_factory=_timestamp)
    completed_at: Optional[str] = None
    duration_seconds: Optional[float] = None
    message: Optional[str] = None
    details: Optional[Dict[str, object]] = None

    def finish(
        self, status: str, *, elapsed: Optional[float] = None, message: Optional[str] = None
    ) -> "TaskRun":
        self.status = status
        self.completed_at = _timestamp()
        if elapsed is not None:
            self.duration_seconds = round(elapsed, 3)
        self.message = message
        return self

    def to_dict(self) -> Dict[str, object]:
        entry: Dict[str, object] = {"task": self.task, "status": self.status, "started_at": self.started_at}
        if self.completed_at:
            entry["completed_at"] = self.completed_at
        if self.duration_seconds is not None:
            entry["duration_seconds"] = self.duration_seconds
        if self.message:
            entry["message"] = self.message
        if self.details is not None:
            entry["details"] = self.details
        return entry


class TaskLogger:
    """Append-only JSON file of ``TaskRun`` entries shared with the operations board."""

    def __init__(self, log_path: Path) -> None:
        self._log_path = log_path
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._log_path

    def record(self, run: TaskRun) -> None:
        with self._lock:
            entries = _read_json_list(self._log_path, "Task log")
            entries.append(run.to_dict())
            self._log_path.write_text(f"{json.dumps(entries, indent=2, default=str)}\n", encoding="utf-8")

    def log(
        self,
        task_name: str,
        status: str,
        *,
        message: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> None:
        """Record an event that has no duration, such as the scheduler starting."""

        run = TaskRun(task=task_name, details=details)
        self.record(run.finish(status, message=message))

    def history(self) -> List[Dict[str, object]]:
        with self._lock:
            return _read_json_list(self._log_path, "Task log")


def _read_json_list(path: Path, label: str) -> List[Any]:
    if not path.exists():
        return []
    raw_content = path.read_text(encoding="utf-8").strip()
    if not raw_content:
        return []
    try:
        data = json.loads(raw_content)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{label} is corrupted and cannot be parsed: {exc.msg}") from exc
    if not isinstance(data, list):
        raise ValueError(f"{label} must contain a JSON list of entries.")
    return data


@dataclass
class PeriodicTask:
    """Represents a task run every ``interval_seconds``."""

    name: str
    interval_seconds: int
    action: Callable[[], Optional[Dict[str, object]]]
    next_run: float = field(init=False)

    def __post_init__(self) -> None:
        self.interval_seconds = max(1, self.interval_seconds)
        self.next_run = time.monotonic()

    def mark_executed(self) -> None:
        self.next_run = time.monotonic() + self.interval_seconds


class PeriodicTaskScheduler:
    """Lightweight interval scheduler that polls for due tasks."""

    def __init__(self, logger: TaskLogger, poll_interval_seconds: int = 1) -> None:
        self._logger = logger
        self._poll_interval_seconds = max(1, poll_interval_seconds)
        self._tasks: List[PeriodicTask] = []
        self._stop_event = threading.Event()

    def add_task(self, name: str, interval_seconds: int, action: Callable[[], Optional[Dict[str, object]]]) -> None:
        self._tasks.append(PeriodicTask(name=name, interval_seconds=interval_seconds, action=action))

    def run_pending(self) -> int:
        """Run every task that is due and return how many ran."""

        executed = 0
        now = time.monotonic()
        for task in self._tasks:
            if now < task.next_run:
                continue
            try:
                run_logged_task(task.name, task.action, self._logger)
            except Exception:  # noqa: BLE001 - one failing job must not stop the others
                logger.exception("Scheduled task %s failed", task.name)
            finally:
                task.mark_executed()
                executed += 1
        return executed

    def start(self) -> None:
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)

        try:
            while not self._stop_event.is_set():
                self.run_pending()
                self._stop_event.wait(self._poll_interval_seconds)
        finally:
            self._stop_event.set()

    def stop(self) -> None:
        self._stop_event.set()

    def _handle_stop_signal(self, signum: int, frame) -> None:  # type: ignore[override]
        logger.info("Received signal %s; stopping scheduler", signum)
        self._stop_event.set()


def run_logged_task(
    task_name: str, action: Callable[[], Optional[Dict[str, object]]], task_log: TaskLogger
) -> Optional[Dict[str, object]]:
    """Run one job, timing it and writing a success or failure entry to ``task_log``."""

    run = TaskRun(task=task_name)
    started = time.perf_counter()
    logger.info("Task %s started", task_name)
    try:
        result = action()
    except Exception as exc:
        task_log.record(run.finish("failed", elapsed=time.perf_counter() - started, message=str(exc)))
        logger.error("Task %s failed: %s", task_name, exc)
        raise
    if isinstance(result, dict):
        run.details = result
    task_log.record(run.finish("success", elapsed=time.perf_counter() - started))
    logger.info("Task %s finished in %.3fs", task_name, run.duration_seconds)
    return result


@dataclass
class EpisodeServices:
    """Agents wired to one clinic store."""

    store: Any
    slots: SlotAllocator
    labs: LabOrderLifecycle
    dispatcher: NotificationDispatcher
    outbox: NotificationOutbox
    saga: ConsultationFinalizationSaga


def build_services(store: Any = None, *, defer_notifications: bool = False) -> EpisodeServices:
    store = store if store is not None else ClinicAPIClient()
    slots = SlotAllocator(store)
    dispatcher = NotificationDispatcher(store)
    outbox = NotificationOutbox()
    saga = ConsultationFinalizationSaga(
        store,
        slot_allocator=slots,
        dispatcher=dispatcher,
        outbox=outbox if defer_notifications else None,
    )
    return EpisodeServices(
        store=store,
        slots=slots,
        labs=LabOrderLifecycle(store),
        dispatcher=dispatcher,
        outbox=outbox,
        saga=saga,
    )


def _load_payload(payload_path: Path) -> Dict[str, object]:
    try:
        payload = json.loads(payload_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid finalization payload JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Finalization payload must be a JSON object.")
    return payload


@contextmanager
def _outbox_lock(outbox_path: Path, timeout: float = OUTBOX_LOCK_TIMEOUT_SECONDS) -> Iterator[None]:
    """Hold an exclusive lock file next to the outbox for one read-modify-write."""

    lock_path = outbox_path.with_name(f"{outbox_path.name}.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout
    while True:
        try:
            descriptor = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Notification outbox is locked by {lock_path}") from None
            time.sleep(0.05)
            continue
        break
    try:
        yield
    finally:
        os.close(descriptor)
        lock_path.unlink(missing_ok=True)


def _write_outbox(outbox_path: Path, record_ids: List[str]) -> None:
    outbox_path.parent.mkdir(parents=True, exist_ok=True)
    staging = outbox_path.with_name(f"{outbox_path.name}.tmp")
    staging.write_text(f"{json.dumps(record_ids, indent=2)}\n", encoding="utf-8")
    os.replace(staging, outbox_path)


def _append_outbox(outbox_path: Path, record_ids: List[str]) -> None:
    with _outbox_lock(outbox_path):
        pending = [str(item) for item in _read_json_list(outbox_path, "Notification outbox")]
        _write_outbox(outbox_path, pending + record_ids)


def _take_outbox(outbox_path: Path) -> List[str]:
    with _outbox_lock(outbox_path):
        pending = [str(item) for item in _read_json_list(outbox_path, "Notification outbox")]
        if pending:
            _write_outbox(outbox_path, [])
    return pending


def _persist_outbox(services: EpisodeServices, outbox_path: Path) -> int:
    """Append ids waiting in the in-process outbox to the outbox file."""

    queued = services.outbox.take_all()
    if queued:
        _append_outbox(outbox_path, queued)
    return len(queued)


def run_finalize(
    services: EpisodeServices, payload_path: Path, outbox_path: Optional[Path] = None
) -> Dict[str, object]:
    """Finalize one consultation from a JSON payload and return its summary."""

    outbox_path = outbox_path or OUTBOX_PATH
    request = FinalizationRequest.from_payload(_load_payload(payload_path))
    result = services.saga.finalize(request)
    summary = result.to_dict()
    if result.notification is not None and result.notification.queued:
        _persist_outbox(services, outbox_path)
    return summary


def run_drain_notifications(services: EpisodeServices, outbox_path: Optional[Path] = None) -> Dict[str, object]:
    """Deliver queued diagnosis notifications; failed ids go back to the outbox file.

    Ids are taken out of the file before delivery, so ids appended by a
    concurrent finalization are left for the next drain.
    """

    outbox_path = outbox_path or OUTBOX_PATH
    for record_id in _take_outbox(outbox_path):
        services.outbox.enqueue(record_id)
    outcomes = services.outbox.drain(services.dispatcher)
    failed = [outcome.diagnosis_record_id for outcome in outcomes if not outcome.ok]
    if failed:
        _append_outbox(outbox_path, failed)
    return {
        "attempted": len(outcomes),
        "sent": len(outcomes) - len(failed),
        "failed": failed,
    }


def run_lab_backlog(services: EpisodeServices, today: Optional[date] = None) -> Dict[str, object]:
    """Summarize open lab orders by status and list overdue reports."""

    today = today or datetime.now(UTC).date()
    orders = services.labs.list_orders()
    counts = Counter(order.status.value for order in orders)
    overdue = [
        order.order_id
        for order in orders
        if order.status is LabOrderStatus.PROCESSING
        and order.tentative_report_date is not None
        and order.tentative_report_date < today
    ]
    return {
        "counts": {status.value: counts.get(status.value, 0) for status in LabOrderStatus},
        "sent_external": sum(1 for order in orders if order.is_sent_external and not order.is_terminal),
        "overdue": overdue,
    }


def run_scheduler(services: EpisodeServices, logger: TaskLogger, outbox_path: Optional[Path] = None) -> None:
    scheduler = PeriodicTaskScheduler(logger=logger)
    scheduler.add_task(
        "drain_notifications",
        NOTIFICATION_DRAIN_INTERVAL_SECONDS,
        lambda: run_drain_notifications(services, outbox_path),
    )
    scheduler.add_task("lab_backlog", LAB_BACKLOG_INTERVAL_SECONDS, lambda: run_lab_backlog(services))
    logger.log("scheduler", "started", message="Periodic scheduler started.")
    try:
        scheduler.start()
    finally:
        logger.log("scheduler", "stopped", message="Periodic scheduler stopped.")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Clinic episode orchestration controller")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("run_scheduler", "finalize", "drain_notifications", "lab_backlog"),
        default="run_scheduler",
        help="Command to execute",
    )
    parser.add_argument("payload", nargs="?", type=Path, help="Finalization payload JSON (finalize only)")
    parser.add_argument(
        "--defer-notification",
        action="store_true",
        help="Queue the diagnosis notification for drain_notifications instead of sending it",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="Logging level")
    args = parser.parse_args(argv)
    if args.command == "finalize" and args.payload is None:
        parser.error("finalize requires a payload file")
    return args


def main(argv: Optional[List[str]] = None, *, store: Any = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    task_logger = TaskLogger(LOG_PATH)
    services = build_services(store, defer_notifications=args.defer_notification)

    if args.command == "finalize":
        try:
            summary = run_logged_task("finalize", lambda: run_finalize(services, args.payload), task_logger)
        except ClinicError as exc:
            logger.error("Finalization failed: %s", exc)
            return 1
        print(json.dumps(summary, indent=2))
    elif args.command == "drain_notifications":
        run_logged_task("drain_notifications", lambda: run_drain_notifications(services), task_logger)
    elif args.command == "lab_backlog":
        summary = run_logged_task("lab_backlog", lambda: run_lab_backlog(services), task_logger)
        print(json.dumps(summary, indent=2))
    else:
        run_scheduler(services, task_logger)
    return 0


if __name__ == "__main__":
    sys.exit(main())
