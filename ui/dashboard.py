"""Operations board for the clinic episode services.

This module exposes a small Flask application that surfaces doctor slot
occupancy, the lab order backlog and the orchestrator task log. Slot and lab
data come from a clinic store; the task log is read from the JSON file the
orchestrator writes. A missing or unreadable task log is tolerated so the
board can run before the scheduler has produced any entries.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
import json
import os
from pathlib import Path
from typing import Any, Dict, List, MutableMapping, Optional

from flask import Flask, Response, jsonify, render_template_string, request

from agents.lab_orders import LabOrderLifecycle
from agents.slots import SLOT_CAPACITY, SlotAllocator
from connector.clinic_client import ClinicAPIClient
from connector.errors import ValidationError
from connector.models import DoctorSlot, LabOrderStatus

DATE_FORMAT = "%Y-%m-%d"
DEFAULT_TASK_LOG_PATH = Path(
    os.getenv("CLINIC_TASK_LOG_PATH", str(Path(__file__).resolve().parents[1] / "orchestrator" / "task_log.json"))
)


class DashboardRepository:
    """Repository loading board data from a clinic store and the task log."""

    def __init__(self, store: Any, task_log_path: Path) -> None:
        self._slots = SlotAllocator(store)
        self._labs = LabOrderLifecycle(store)
        self._task_log_path = task_log_path

    def get_task_log(self) -> List[MutableMapping[str, object]]:
        if not self._task_log_path.exists():
            return []
        try:
            with self._task_log_path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (json.JSONDecodeError, OSError):
            return []
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, MutableMapping)]
        return []

    def get_day_slots(self, doctor_id: str, target_date: date) -> List[DoctorSlot]:
        start = datetime.combine(target_date, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1) - timedelta(minutes=1)
        return self._slots.get_slots(doctor_id, start, end)

    def get_lab_orders(self, status: Optional[LabOrderStatus] = None) -> List[Dict[str, Any]]:
        return [order.to_dict() for order in self._labs.list_orders(status)]


def parse_iso_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError:
        return None


def parse_status(value: str | None) -> LabOrderStatus | None:
    if not value:
        return None
    try:
        return LabOrderStatus(value.upper())
    except ValueError as exc:
        raise ValidationError(f"Unknown lab order status '{value}'") from exc


def slot_row(slot: DoctorSlot) -> Dict[str, Any]:
    row = slot.to_dict()
    row["occupied"] = len(slot.appointment_ids)
    row["capacity"] = SLOT_CAPACITY
    return row


def build_dashboard_context(
    repo: DashboardRepository,
    target_date: date,
    doctor_id: str | None,
) -> MutableMapping[str, object]:
    slots = [slot_row(slot) for slot in repo.get_day_slots(doctor_id, target_date)] if doctor_id else []
    orders = repo.get_lab_orders()
    backlog = {status.value: 0 for status in LabOrderStatus}
    for order in orders:
        backlog[order["status"]] += 1
    return {
        "filters": {
            "date": target_date.strftime(DATE_FORMAT),
            "doctor": doctor_id or "",
        },
        "slots": slots,
        "backlog": backlog,
        "open_orders": [order for order in orders if order["status"] != LabOrderStatus.COMPLETED.value],
        "logs": list(reversed(repo.get_task_log()))[:50],
    }


dashboard_template = """
<!doctype html>
<html lang=\"en\">
  <head>
    <meta charset=\"utf-8\">
    <meta name=\"viewport\" content=\"width=device-width, initial-scale=1\">
    <meta http-equiv=\"refresh\" content=\"60\">
    <title>Clinic Operations Board</title>
    <link
      href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\"
      rel=\"stylesheet\"
      integrity=\"sha384-QWTKZyjpPEjISv5WaRU9OFeRpok6YctnYmDr5pNlyT2bRjXh0JMhjY6hW+ALEwIH\"
      crossorigin=\"anonymous\"
    >
  </head>
  <body class=\"bg-light\">
    <nav class=\"navbar navbar-dark bg-primary\">
      <div class=\"container-fluid\">
        <a class=\"navbar-brand\" href=\"/dashboard\">Clinic Operations Board</a>
      </div>
    </nav>
    <main class=\"container my-4\">
      <section class=\"mb-4\">
        <form class=\"row gy-2 gx-3 align-items-center\" method=\"get\" action=\"/dashboard\" aria-label=\"Board filters\">
          <div class=\"col-md-3\">
            <label for=\"filter-date\" class=\"form-label\">Date</label>
            <input id=\"filter-date\" name=\"date\" type=\"date\" class=\"form-control\" value=\"{{ filters.date }}\">
          </div>
          <div class=\"col-md-3\">
            <label for=\"filter-doctor\" class=\"form-label\">Doctor</label>
            <input id=\"filter-doctor\" name=\"doctor\" type=\"text\" class=\"form-control\" value=\"{{ filters.doctor }}\">
          </div>
          <div class=\"col-md-3 align-self-end\">
            <button type=\"submit\" class=\"btn btn-primary w-100\">Apply Filters</button>
          </div>
        </form>
      </section>
      <section class=\"row g-4\">
        <div class=\"col-lg-6\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-success text-white\">Doctor Slots</div>
            <div class=\"card-body\">
              {% if slots %}
                <table class=\"table table-sm table-striped\">
                  <thead>
                    <tr><th scope=\"col\">Time</th><th scope=\"col\">Appointments</th><th scope=\"col\">Occupancy</th></tr>
                  </thead>
                  <tbody>
                    {% for slot in slots %}
                      <tr>
                        <td>{{ slot.timeSlot }}</td>
                        <td>{{ slot.appointment1Id or '-' }} / {{ slot.appointment2Id or '-' }}</td>
                        <td>{{ slot.occupied }} of {{ slot.capacity }}</td>
                      </tr>
                    {% endfor %}
                  </tbody>
                </table>
              {% else %}
                <p class=\"text-muted mb-0\">No occupied slots for the selected doctor and date.</p>
              {% endif %}
            </div>
          </div>
        </div>
        <div class=\"col-lg-6\">
          <div class=\"card shadow-sm h-100\">
            <div class=\"card-header bg-info text-white\">Lab Order Backlog</div>
            <div class=\"card-body\">
              <ul class=\"list-inline\">
                {% for status, count in backlog.items() %}
                  <li class=\"list-inline-item\"><strong>{{ status }}</strong> {{ count }}</li>
                {% endfor %}
              </ul>
              {% if open_orders %}
                <table class=\"table table-sm table-striped\">
                  <thead>
                    <tr><th scope=\"col\">Order</th><th scope=\"col\">Test</th><th scope=\"col\">Status</th><th scope=\"col\">Report Due</th><th scope=\"col\">External Lab</th></tr>
                  </thead>
                  <tbody>
                    {% for order in open_orders %}
                      <tr>
                        <td>{{ order.id }}</td>
                        <td>{{ order.labTestId }}</td>
                        <td>{{ order.status }}</td>
                        <td>{{ order.tentativeReportDate or '-' }}</td>
                        <td>{{ order.externalLabName if order.isSentExternal else '-' }}</td>
                      </tr>
                    {% endfor %}
                  </tbody>
                </table>
              {% else %}
                <p class=\"text-muted mb-0\">No open lab orders.</p>
              {% endif %}
            </div>
          </div>
        </div>
      </section>
      <section class=\"mt-5\">
        <div class=\"card shadow-sm\">
          <div class=\"card-header bg-secondary text-white\">Task Log</div>
          <div class=\"card-body\">
            {% if logs %}
              <table class=\"table table-sm table-striped\">
                <thead>
                  <tr><th scope=\"col\">Completed</th><th scope=\"col\">Task</th><th scope=\"col\">Status</th><th scope=\"col\">Message</th></tr>
                </thead>
                <tbody>
                  {% for log in logs %}
                    <tr>
                      <td>{{ log.completed_at or '-' }}</td>
                      <td>{{ log.task or '-' }}</td>
                      <td>{{ log.status or '-' }}</td>
                      <td>{{ log.message or '-' }}</td>
                    </tr>
                  {% endfor %}
                </tbody>
              </table>
            {% else %}
              <p class=\"text-muted mb-0\">No task log entries available.</p>
            {% endif %}
          </div>
        </div>
      </section>
    </main>
  </body>
</html>
"""


def create_app(store: Any = None, task_log_path: Optional[Path] = None) -> Flask:
    app = Flask(__name__)
    repository = DashboardRepository(
        store if store is not None else ClinicAPIClient(),
        task_log_path or DEFAULT_TASK_LOG_PATH,
    )

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> tuple[Response, int]:
        return jsonify({"error": str(exc)}), 400

    @app.route("/slots/<doctor_id>", methods=["GET"])
    def slots(doctor_id: str) -> Response:
        """Return the doctor's occupied slots for one day as JSON."""
        target_date = parse_iso_date(request.args.get("date")) or date.today()
        return jsonify([slot_row(slot) for slot in repository.get_day_slots(doctor_id, target_date)])

    @app.route("/lab-orders", methods=["GET"])
    def lab_orders() -> Response:
        return jsonify(repository.get_lab_orders(parse_status(request.args.get("status"))))

    @app.route("/tasks", methods=["GET"])
    def tasks() -> Response:
        """Return orchestrator task log entries as JSON."""
        return jsonify(repository.get_task_log())

    @app.route("/dashboard", methods=["GET"])
    def dashboard() -> str:
        target_date = parse_iso_date(request.args.get("date")) or date.today()
        doctor_id = (request.args.get("doctor") or "").strip() or None
        context = build_dashboard_context(repository, target_date, doctor_id)
        return render_template_string(dashboard_template, **context)

    return app


if __name__ == "__main__":
    create_app().run(
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "5000")),
        debug=False,
    )
