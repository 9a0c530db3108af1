"""Booking, cancellation, slot blocking and move/swap over a ScheduleState.

Every command validates against the current snapshot and either raises a
``Rejection`` without touching anything or commits one new snapshot. Commands
are serialized by a per-engine lock; readers use ``state.view()`` and need no lock.
"""
from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from .directory import PatientDirectory
from .errors import (
    CrossContextMove,
    DayClosed,
    DuplicateBookingSameDay,
    InvalidTarget,
    NotFound,
    Rejection,
    SlotBlocked,
    SlotNotOnGrid,
    SlotOccupied,
    SourceBlocked,
)
from .models import Appointment, BlockedSlot, BlockResult, MoveResult, ScheduleSnapshot
from .notify import LogNotifier, Notifier, safe_notify
from .schedule import ScheduleState, ScheduleView, is_day_closed
from .slots import is_bookable_time
from .timeutils import Clock, system_clock, to_iso_date

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Appointment"
DEFAULT_BLOCK_REASON = "Busy"


def new_id() -> str:
    return str(uuid.uuid4())


def _with_appointments(snapshot: ScheduleSnapshot, *updated: Appointment) -> ScheduleSnapshot:
    by_id = {a.id: a for a in updated}
    return snapshot.model_copy(
        update={"appointments": tuple(by_id.get(a.id, a) for a in snapshot.appointments)}
    )


class SchedulingEngine:
    def __init__(
        self,
        state: ScheduleState,
        *,
        clock: Clock = system_clock,
        notifier: Optional[Notifier] = None,
        directory: Optional[PatientDirectory] = None,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self.state = state
        self.clock = clock
        self.notifier = notifier if notifier is not None else LogNotifier()
        self.directory = directory
        self._new_id = id_factory
        self._lock = threading.Lock()

    def today(self) -> str:
        return to_iso_date(self.clock())

    def is_closed(self, date_iso: str) -> bool:
        return is_day_closed(date_iso, self.today())

    @contextmanager
    def _reported(self, title: str) -> Iterator[None]:
        try:
            yield
        except Rejection as e:
            logger.info("%s (%s: %s)", title, e.code, e.message)
            safe_notify(self.notifier, "error", title, e.message)
            raise

    def _ensure_open(self, date_iso: str) -> None:
        if self.is_closed(date_iso):
            raise DayClosed(f"{date_iso} is closed: no changes on weekends or past days")

    @staticmethod
    def _ensure_doctor(view: ScheduleView, doctor_id: str) -> None:
        if view.doctor(doctor_id) is None:
            raise NotFound(f"Unknown doctor {doctor_id!r}")

    @staticmethod
    def _ensure_on_grid(time: str) -> None:
        if not is_bookable_time(time):
            raise SlotNotOnGrid(f"{time} is not a bookable slot")

    # Booking ---------------------------------------------------------------

    def book(
        self,
        date_iso: str,
        doctor_id: str,
        time: str,
        patient_id: str,
        reason: Optional[str] = None,
    ) -> Appointment:
        with self._reported("Booking failed"), self._lock:
            self._ensure_open(date_iso)
            view = self.state.view()
            self._ensure_doctor(view, doctor_id)
            self._ensure_on_grid(time)

            if view.is_blocked(date_iso, doctor_id, time):
                raise SlotBlocked(f"{date_iso} {time} is blocked by the doctor")
            if view.appointment_at(date_iso, doctor_id, time):
                raise SlotOccupied(f"{date_iso} {time} is already booked")
            existing = view.patient_appointment_on(date_iso, doctor_id, patient_id)
            if existing:
                raise DuplicateBookingSameDay(f"Patient already has an appointment at {existing.time}")
            if self.directory is not None and self.directory.get_patient(patient_id) is None:
                raise NotFound(f"Unknown patient {patient_id!r}")

            appt = Appointment(
                id=self._new_id(),
                date=date_iso,
                time=time,
                doctor_id=doctor_id,
                patient_id=patient_id,
                reason=(reason or "").strip() or DEFAULT_REASON,
            )
            snap = view.snapshot
            self.state.commit(snap.model_copy(update={"appointments": (*snap.appointments, appt)}))

        logger.info("Booked %s for patient %s at %s %s", appt.id, patient_id, date_iso, time)
        safe_notify(self.notifier, "success", "Appointment booked", f"{date_iso} {time}")
        return appt

    def cancel(self, appointment_id: str) -> Appointment:
        with self._reported("Cancellation failed"), self._lock:
            view = self.state.view()
            appt = view.appointment(appointment_id)
            if appt is None:
                raise NotFound(f"Unknown appointment {appointment_id!r}")
            snap = view.snapshot
            remaining = tuple(a for a in snap.appointments if a.id != appointment_id)
            self.state.commit(snap.model_copy(update={"appointments": remaining}))

        logger.info("Cancelled %s (%s %s)", appt.id, appt.date, appt.time)
        safe_notify(self.notifier, "success", "Appointment cancelled", f"{appt.date} {appt.time}")
        return appt

    def discard(self, appointment_id: str) -> Optional[Appointment]:
        """Remove a booking that never took effect elsewhere. Silent, and a no-op if it is gone."""
        with self._lock:
            snap = self.state.snapshot
            remaining = tuple(a for a in snap.appointments if a.id != appointment_id)
            if len(remaining) == len(snap.appointments):
                return None
            gone = next(a for a in snap.appointments if a.id == appointment_id)
            self.state.commit(snap.model_copy(update={"appointments": remaining}))
        logger.info("Rolled back booking %s (%s %s)", gone.id, gone.date, gone.time)
        return gone

    # Blocking --------------------------------------------------------------

    def block(
        self,
        date_iso: str,
        doctor_id: str,
        time: str,
        reason: Optional[str] = None,
    ) -> BlockResult:
        """Close an open slot, or reopen it if it is already closed."""
        with self._reported("Slot change failed"), self._lock:
            self._ensure_open(date_iso)
            view = self.state.view()
            self._ensure_doctor(view, doctor_id)
            self._ensure_on_grid(time)
            snap = view.snapshot

            existing = view.blocked_at(date_iso, doctor_id, time)
            if existing:
                remaining = tuple(b for b in snap.blocked_slots if b.id != existing.id)
                self.state.commit(snap.model_copy(update={"blocked_slots": remaining}))
                result = BlockResult(action="unblocked", slot=existing)
            else:
                if view.appointment_at(date_iso, doctor_id, time):
                    raise SlotOccupied("Slot is booked: move or cancel the appointment before closing it")
                slot = BlockedSlot(
                    id=self._new_id(),
                    date=date_iso,
                    doctor_id=doctor_id,
                    time=time,
                    reason=(reason or "").strip() or DEFAULT_BLOCK_REASON,
                )
                self.state.commit(snap.model_copy(update={"blocked_slots": (slot, *snap.blocked_slots)}))
                result = BlockResult(action="blocked", slot=slot)

        if result.action == "blocked":
            safe_notify(self.notifier, "success", "Slot closed", f"{date_iso} {time} • {result.slot.reason}")
        else:
            safe_notify(self.notifier, "success", "Slot opened", f"{date_iso} {time}")
        return result

    def unblock(self, blocked_slot_id: str) -> BlockedSlot:
        with self._reported("Slot change failed"), self._lock:
            view = self.state.view()
            slot = view.blocked_slot(blocked_slot_id)
            if slot is None:
                raise NotFound(f"Unknown blocked slot {blocked_slot_id!r}")
            self._ensure_open(slot.date)
            snap = view.snapshot
            remaining = tuple(b for b in snap.blocked_slots if b.id != blocked_slot_id)
            self.state.commit(snap.model_copy(update={"blocked_slots": remaining}))

        safe_notify(self.notifier, "success", "Slot opened", f"{slot.date} {slot.time}")
        return slot

    # Move / swap -----------------------------------------------------------

    def move_or_swap(
        self,
        appointment_id: str,
        target_time: str,
        view_date: str,
        view_doctor_id: str,
    ) -> MoveResult:
        """Drop an appointment on another slot of the day being displayed.

        Dropping on an empty slot relocates the appointment; dropping on an
        occupied one exchanges the two appointments' times.
        """
        with self._reported("Move failed"), self._lock:
            view = self.state.view()
            source = view.appointment(appointment_id)
            if source is None:
                raise NotFound(f"Unknown appointment {appointment_id!r}")
            self._ensure_open(view_date)

            if source.date != view_date or source.doctor_id != view_doctor_id:
                raise CrossContextMove("Appointments can only be moved within the displayed day")

            if (
                not is_bookable_time(target_time)
                or view.is_blocked(source.date, source.doctor_id, target_time)
                or self.is_closed(source.date)
            ):
                raise InvalidTarget(f"Cannot drop on {target_time}: closed day or closed slot")

            if target_time == source.time:
                return MoveResult(status="unchanged", appointment=source)

            occupant = view.appointment_at(source.date, source.doctor_id, target_time)
            moved = source.model_copy(update={"time": target_time})
            if occupant is None:
                self.state.commit(_with_appointments(view.snapshot, moved))
                result = MoveResult(status="moved", appointment=moved)
            else:
                if view.is_blocked(source.date, source.doctor_id, source.time):
                    raise SourceBlocked(f"Source slot {source.time} is closed")
                displaced = occupant.model_copy(update={"time": source.time})
                self.state.commit(_with_appointments(view.snapshot, moved, displaced))
                result = MoveResult(status="swapped", appointment=moved, with_appointment_id=occupant.id)

        if result.status == "moved":
            safe_notify(self.notifier, "success", "Appointment moved", f"{source.time} -> {target_time}")
        else:
            safe_notify(self.notifier, "success", "Appointments swapped", f"{source.time} <-> {target_time}")
        return result
