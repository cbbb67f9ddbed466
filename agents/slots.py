"""Doctor slot allocator enforcing the two-patients-per-slot capacity."""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Any, DefaultDict, Iterator, List, Optional, Protocol, Tuple

from connector.errors import ConflictError, NotFoundError, SlotFullError, ValidationError
from connector.models import DoctorSlot, normalize_time_slot

logger = logging.getLogger(__name__)

SLOT_CAPACITY = 2


class SlotStoreProtocol(Protocol):
    """Protocol describing the slot operations required from a clinic store."""

    def get_slots(
        self, doctor_id: str, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> List[DoctorSlot]:
        """Return slots for *doctor_id* whose time falls inside the range."""

    def find_slot(self, doctor_id: str, time_slot: datetime) -> Optional[DoctorSlot]:
        """Return the slot keyed by ``(doctor_id, minute)`` if present."""

    def find_slot_by_appointment(self, doctor_id: str, appointment_id: str) -> Optional[DoctorSlot]:
        """Return the slot currently holding *appointment_id*."""

    def add_slot(self, doctor_id: str, appointment1_id: str, time_slot: datetime) -> DoctorSlot:
        """Create a slot with its first side filled."""

    def update_slot(self, slot_id: str, **changes: Any) -> DoctorSlot:
        """Update sides or time of an existing slot."""


def _validate_identifier(value: str, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} must be a non-empty string")
    return value.strip()


class SlotAllocator:
    """Owns doctor slots and fills them up to :data:`SLOT_CAPACITY` appointments.

    Every mutation of a slot happens while holding a lock keyed by
    ``(doctor_id, minute)``, so two concurrent allocations that observe the
    same half-filled slot cannot both claim its second side.
    """

    def __init__(self, store: SlotStoreProtocol) -> None:
        self._store = store
        self._guard = threading.Lock()
        self._slot_locks: DefaultDict[Tuple[str, datetime], threading.Lock] = defaultdict(threading.Lock)

    @contextmanager
    def _locked(self, *keys: Tuple[str, datetime]) -> Iterator[None]:
        ordered = sorted(set(keys))
        with self._guard:
            locks = [self._slot_locks[key] for key in ordered]
        for lock in locks:
            lock.acquire()
        try:
            yield
        finally:
            for lock in reversed(locks):
                lock.release()

    def allocate(self, doctor_id: str, timestamp: datetime, appointment_id: str) -> DoctorSlot:
        """Place *appointment_id* in the doctor's slot at *timestamp*.

        A missing slot is created, a half-filled slot gets its second side
        filled, and a full slot raises :class:`SlotFullError`. Allocating an
        appointment that already sits in the slot returns the slot unchanged.
        """

        doctor_id = _validate_identifier(doctor_id, "doctor_id")
        appointment_id = _validate_identifier(appointment_id, "appointment_id")
        key = normalize_time_slot(timestamp)

        with self._locked((doctor_id, key)):
            return self._allocate_locked(doctor_id, key, appointment_id)

    def _allocate_locked(self, doctor_id: str, key: datetime, appointment_id: str) -> DoctorSlot:
        slot = self._store.find_slot(doctor_id, key)
        if slot is None:
            slot = self._store.add_slot(doctor_id, appointment_id, key)
            logger.info("Created slot %s for doctor %s at %s", slot.slot_id, doctor_id, key.isoformat())
            return slot

        if slot.holds(appointment_id):
            logger.debug("Appointment %s already allocated to slot %s", appointment_id, slot.slot_id)
            return slot

        if not slot.appointment1_id:
            slot = self._store.update_slot(slot.slot_id, appointment1_id=appointment_id)
        elif not slot.appointment2_id:
            slot = self._store.update_slot(slot.slot_id, appointment2_id=appointment_id)
        else:
            logger.warning("Slot %s for doctor %s at %s is full", slot.slot_id, doctor_id, key.isoformat())
            raise SlotFullError(doctor_id, key.isoformat())

        logger.info("Allocated appointment %s to slot %s", appointment_id, slot.slot_id)
        return slot

    def has_capacity(self, doctor_id: str, timestamp: datetime) -> bool:
        slot = self._store.find_slot(doctor_id, normalize_time_slot(timestamp))
        return slot is None or len(slot.appointment_ids) < SLOT_CAPACITY

    def get_slots(
        self,
        doctor_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[DoctorSlot]:
        """Return the doctor's occupied slots in ``[start, end]``, newest first."""

        doctor_id = _validate_identifier(doctor_id, "doctor_id")
        if start and end and start > end:
            raise ValidationError("start must not be after end")
        return [slot for slot in self._store.get_slots(doctor_id, start, end) if slot.appointment_ids]

    def reschedule(self, doctor_id: str, appointment_id: str, new_timestamp: datetime) -> DoctorSlot:
        """Move *appointment_id* to the slot at *new_timestamp*.

        A shared slot keeps the partner appointment on its first side. If the
        target slot is full the appointment keeps its current placement.
        """

        doctor_id = _validate_identifier(doctor_id, "doctor_id")
        appointment_id = _validate_identifier(appointment_id, "appointment_id")
        target = normalize_time_slot(new_timestamp)

        current = self._store.find_slot_by_appointment(doctor_id, appointment_id)
        if current is None:
            raise NotFoundError(f"Appointment '{appointment_id}' holds no slot for doctor {doctor_id}")
        if current.time_slot == target:
            return current

        with self._locked((doctor_id, current.time_slot), (doctor_id, target)):
            current = self._store.find_slot_by_appointment(doctor_id, appointment_id)
            if current is None:
                raise ConflictError(f"Appointment '{appointment_id}' was moved concurrently")

            target_slot = self._store.find_slot(doctor_id, target)
            if target_slot is None and len(current.appointment_ids) == 1:
                moved = self._store.update_slot(current.slot_id, time_slot=target)
                logger.info("Moved slot %s to %s", moved.slot_id, target.isoformat())
                return moved

            allocated = self._allocate_locked(doctor_id, target, appointment_id)
            self._vacate(current, appointment_id)
            return allocated

    def _vacate(self, slot: DoctorSlot, appointment_id: str) -> DoctorSlot:
        if slot.appointment2_id == appointment_id:
            updated = self._store.update_slot(slot.slot_id, appointment2_id=None)
        else:
            updated = self._store.update_slot(
                slot.slot_id, appointment1_id=slot.appointment2_id, appointment2_id=None
            )
        logger.info("Released appointment %s from slot %s", appointment_id, slot.slot_id)
        return updated


__all__ = ["SLOT_CAPACITY", "SlotAllocator", "SlotStoreProtocol"]
