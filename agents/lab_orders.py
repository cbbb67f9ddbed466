"""Lab test order lifecycle: processing, external referral and completion gate.

Orders move ``PENDING -> PROCESSING -> COMPLETED``. Sending a sample to an
external lab only flips the ``is_sent_external`` flag; it is not a state of
its own. Completion requires a recorded value for every catalog parameter of
the test and at least one attached report document. Completeness is always
recomputed from the store, never cached on the order.
"""
from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, ContextManager, List, Optional, Protocol

from connector.errors import (
    IncompleteResultsError,
    InvalidTransitionError,
    MissingAttachmentError,
    NotFoundError,
    ValidationError,
)
from connector.models import (
    Attachment,
    LabOrderStatus,
    LabTestOrder,
    LabTestParameter,
    LabTestParameterResult,
    parse_date,
)

logger = logging.getLogger(__name__)


class LabStoreProtocol(Protocol):
    """Protocol describing the lab operations required from a clinic store."""

    def get_order(self, order_id: str) -> LabTestOrder:
        """Return the order or raise :class:`NotFoundError`."""

    def list_orders(self, status: Optional[LabOrderStatus] = None) -> List[LabTestOrder]:
        """Return orders, optionally filtered by status."""

    def update_order(self, order_id: str, **changes: Any) -> LabTestOrder:
        """Persist status, tentative date or external referral changes."""

    def get_parameters_by_lab_test(self, lab_test_id: str) -> List[LabTestParameter]:
        """Return the catalog parameters of a lab test."""

    def get_results_by_order(self, order_id: str) -> List[LabTestParameterResult]:
        """Return the parameter results recorded on an order."""

    def record_result(
        self, order_id: str, parameter_id: str, value: float, unit_override: Optional[str] = None
    ) -> LabTestParameterResult:
        """Create the result for one parameter."""

    def update_result(
        self, result_id: str, value: float, unit_override: Optional[str] = None
    ) -> LabTestParameterResult:
        """Overwrite an existing result."""

    def upload_attachment(self, order_id: str, filename: str, content: bytes) -> Attachment:
        """Store a report document for the order."""

    def get_attachments(self, order_id: str) -> List[Attachment]:
        """Return the documents attached to the order."""


class ResultFlag(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


@dataclass
class CompletenessReport:
    order_id: str
    missing_parameters: List[str] = field(default_factory=list)
    attachment_count: int = 0

    @property
    def parameters_complete(self) -> bool:
        return not self.missing_parameters

    @property
    def has_attachment(self) -> bool:
        return self.attachment_count > 0

    @property
    def is_complete(self) -> bool:
        return self.parameters_complete and self.has_attachment


@dataclass(frozen=True)
class ResultReading:
    parameter_id: str
    name: str
    value: Optional[float]
    unit: Optional[str]
    flag: ResultFlag


class LabOrderLifecycle:
    """State machine governing a lab test order from creation to completion."""

    def __init__(self, store: LabStoreProtocol) -> None:
        self._store = store

    def _transaction(self) -> ContextManager[Any]:
        transaction = getattr(self._store, "transaction", None)
        return transaction() if callable(transaction) else nullcontext()

    def _load_mutable(self, order_id: str) -> LabTestOrder:
        order = self._store.get_order(order_id)
        if order.is_terminal:
            raise InvalidTransitionError(f"Lab order {order_id} is completed and can no longer change")
        return order

    def list_orders(self, status: Optional[LabOrderStatus] = None) -> List[LabTestOrder]:
        return self._store.list_orders(LabOrderStatus(status) if status else None)

    def start_processing(self, order_id: str) -> LabTestOrder:
        with self._transaction():
            order = self._store.get_order(order_id)
            if order.status is not LabOrderStatus.PENDING:
                raise InvalidTransitionError(
                    f"Lab order {order_id} cannot start processing from {order.status.value}"
                )
            updated = self._store.update_order(order_id, status=LabOrderStatus.PROCESSING)
        logger.info("Lab order %s moved to PROCESSING", order_id)
        return updated

    def set_tentative_date(self, order_id: str, report_date: date) -> LabTestOrder:
        """Record the expected report date, promoting a pending order to processing."""

        report_date = parse_date(report_date)
        if report_date is None:
            raise ValidationError("A tentative report date is required")
        with self._transaction():
            self._load_mutable(order_id)
            updated = self._store.update_order(
                order_id,
                status=LabOrderStatus.PROCESSING,
                tentative_report_date=report_date,
            )
        logger.info("Lab order %s tentative report date set to %s", order_id, report_date.isoformat())
        return updated

    def mark_external(self, order_id: str, lab_name: str) -> LabTestOrder:
        if not isinstance(lab_name, str) or not lab_name.strip():
            raise ValidationError("External lab name is required")
        with self._transaction():
            order = self._load_mutable(order_id)
            if order.status is not LabOrderStatus.PROCESSING:
                raise InvalidTransitionError(
                    f"Lab order {order_id} must be processing before it can be sent externally"
                )
            updated = self._store.update_order(
                order_id,
                is_sent_external=True,
                external_lab_name=lab_name.strip(),
            )
        logger.info("Lab order %s sent to external lab %s", order_id, lab_name.strip())
        return updated

    def mark_internal(self, order_id: str) -> LabTestOrder:
        """Bring an externally referred order back in house."""

        with self._transaction():
            order = self._load_mutable(order_id)
            if order.status is not LabOrderStatus.PROCESSING:
                raise InvalidTransitionError(
                    f"Lab order {order_id} must be processing to change its external referral"
                )
            if not order.is_sent_external:
                raise InvalidTransitionError(f"Lab order {order_id} is not referred to an external lab")
            status = LabOrderStatus.PROCESSING if order.tentative_report_date else LabOrderStatus.PENDING
            updated = self._store.update_order(
                order_id,
                status=status,
                is_sent_external=False,
                external_lab_name=None,
            )
        logger.info("Lab order %s returned to internal processing as %s", order_id, status.value)
        return updated

    def record_result(
        self,
        order_id: str,
        parameter_id: str,
        value: float,
        unit_override: Optional[str] = None,
    ) -> LabTestParameterResult:
        """Record or overwrite the value of one catalog parameter."""

        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationError("A result value is required")
        try:
            value = float(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Result value {value!r} is not numeric") from exc
        with self._transaction():
            order = self._load_mutable(order_id)
            catalog = {parameter.parameter_id for parameter in self._store.get_parameters_by_lab_test(order.lab_test_id)}
            if parameter_id not in catalog:
                raise NotFoundError(
                    f"Parameter '{parameter_id}' is not defined for lab test {order.lab_test_id}"
                )
            for existing in self._store.get_results_by_order(order_id):
                if existing.parameter_id == parameter_id:
                    return self._store.update_result(existing.result_id, value, unit_override)
            return self._store.record_result(order_id, parameter_id, value, unit_override)

    def attach_document(self, order_id: str, filename: str, content: bytes) -> Attachment:
        with self._transaction():
            self._load_mutable(order_id)
            attachment = self._store.upload_attachment(order_id, filename, content)
        logger.info("Attached %s to lab order %s", attachment.filename, order_id)
        return attachment

    def completeness(self, order_id: str) -> CompletenessReport:
        order = self._store.get_order(order_id)
        parameters = self._store.get_parameters_by_lab_test(order.lab_test_id)
        recorded = {
            result.parameter_id
            for result in self._store.get_results_by_order(order_id)
            if result.has_value
        }
        return CompletenessReport(
            order_id=order_id,
            missing_parameters=[p.name for p in parameters if p.parameter_id not in recorded],
            attachment_count=len(self._store.get_attachments(order_id)),
        )

    def complete(self, order_id: str) -> LabTestOrder:
        """Mark the order COMPLETED once every parameter and a document are present."""

        with self._transaction():
            self._load_mutable(order_id)
            report = self.completeness(order_id)
            if not report.parameters_complete:
                raise IncompleteResultsError(
                    f"Lab order {order_id} is missing values for: {', '.join(report.missing_parameters)}",
                    missing_parameters=report.missing_parameters,
                    attachment_missing=not report.has_attachment,
                )
            if not report.has_attachment:
                raise MissingAttachmentError(
                    f"Lab order {order_id} needs at least one attached document",
                    attachment_missing=True,
                )
            updated = self._store.update_order(order_id, status=LabOrderStatus.COMPLETED)
        logger.info("Lab order %s completed", order_id)
        return updated

    def interpret_results(self, order_id: str) -> List[ResultReading]:
        order = self._store.get_order(order_id)
        results = {result.parameter_id: result for result in self._store.get_results_by_order(order_id)}
        readings: List[ResultReading] = []
        for parameter in self._store.get_parameters_by_lab_test(order.lab_test_id):
            result = results.get(parameter.parameter_id)
            if result is None or not result.has_value:
                continue
            value = float(result.value)
            flag = ResultFlag.NORMAL
            if parameter.lower_limit is not None and value < parameter.lower_limit:
                flag = ResultFlag.LOW
            elif parameter.upper_limit is not None and value > parameter.upper_limit:
                flag = ResultFlag.HIGH
            readings.append(
                ResultReading(
                    parameter_id=parameter.parameter_id,
                    name=parameter.name,
                    value=value,
                    unit=result.unit_override or parameter.unit,
                    flag=flag,
                )
            )
        return readings


__all__ = [
    "CompletenessReport",
    "LabOrderLifecycle",
    "LabStoreProtocol",
    "ResultFlag",
    "ResultReading",
]
