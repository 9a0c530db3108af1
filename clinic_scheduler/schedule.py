"""In-memory schedule state and the read-only views derived from it."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Optional

from .errors import InvariantViolation
from .models import (
    Appointment,
    BlockedSlot,
    DayRow,
    DaySummary,
    DayView,
    Doctor,
    Patient,
    ScheduleSnapshot,
    SlotStatus,
    TimeRow,
)
from .slots import build_schedule_rows, is_bookable_time
from .timeutils import add_days, is_past, is_weekend

logger = logging.getLogger(__name__)


def is_day_closed(date_iso: str, today_iso: str) -> bool:
    """Weekends and past dates accept no booking, blocking or moving."""
    return is_weekend(date_iso) or is_past(date_iso, today_iso)


def check_consistency(snapshot: ScheduleSnapshot) -> None:
    """Raise InvariantViolation if two records claim one slot or a time is off the grid."""
    appt_keys = Counter((a.date, a.doctor_id, a.time) for a in snapshot.appointments)
    taken = [key for key, n in appt_keys.items() if n > 1]
    if taken:
        raise InvariantViolation(f"Double-booked slots: {sorted(taken)}")

    block_keys = Counter((b.date, b.doctor_id, b.time) for b in snapshot.blocked_slots)
    taken = [key for key, n in block_keys.items() if n > 1]
    if taken:
        raise InvariantViolation(f"Slots blocked twice: {sorted(taken)}")

    both = set(appt_keys) & set(block_keys)
    if both:
        raise InvariantViolation(f"Slots both booked and blocked: {sorted(both)}")

    off_grid = [r.id for r in (*snapshot.appointments, *snapshot.blocked_slots) if not is_bookable_time(r.time)]
    if off_grid:
        raise InvariantViolation(f"Records off the slot grid: {off_grid}")

    ids = Counter(a.id for a in snapshot.appointments)
    dupes = [i for i, n in ids.items() if n > 1]
    if dupes:
        raise InvariantViolation(f"Duplicate appointment ids: {dupes}")


class ScheduleView:
    """Derivations over one snapshot. Every answer is recomputed from the source tuples."""

    def __init__(self, snapshot: ScheduleSnapshot) -> None:
        self.snapshot = snapshot

    # Lookups ---------------------------------------------------------------

    def doctor(self, doctor_id: str) -> Optional[Doctor]:
        return next((d for d in self.snapshot.doctors if d.id == doctor_id), None)

    def patient(self, patient_id: str) -> Optional[Patient]:
        return next((p for p in self.snapshot.patients if p.id == patient_id), None)

    def appointment(self, appointment_id: str) -> Optional[Appointment]:
        return next((a for a in self.snapshot.appointments if a.id == appointment_id), None)

    def blocked_slot(self, blocked_slot_id: str) -> Optional[BlockedSlot]:
        return next((b for b in self.snapshot.blocked_slots if b.id == blocked_slot_id), None)

    # Day queries -----------------------------------------------------------

    def appointments_on(self, date_iso: str, doctor_id: str) -> list[Appointment]:
        day = [a for a in self.snapshot.appointments if a.date == date_iso and a.doctor_id == doctor_id]
        return sorted(day, key=lambda a: a.time)

    def blocked_on(self, date_iso: str, doctor_id: str) -> list[BlockedSlot]:
        day = [b for b in self.snapshot.blocked_slots if b.date == date_iso and b.doctor_id == doctor_id]
        return sorted(day, key=lambda b: b.time)

    def appointment_at(self, date_iso: str, doctor_id: str, time: str) -> Optional[Appointment]:
        return next(
            (
                a
                for a in self.snapshot.appointments
                if a.date == date_iso and a.doctor_id == doctor_id and a.time == time
            ),
            None,
        )

    def blocked_at(self, date_iso: str, doctor_id: str, time: str) -> Optional[BlockedSlot]:
        return next(
            (
                b
                for b in self.snapshot.blocked_slots
                if b.date == date_iso and b.doctor_id == doctor_id and b.time == time
            ),
            None,
        )

    def is_blocked(self, date_iso: str, doctor_id: str, time: str) -> bool:
        return self.blocked_at(date_iso, doctor_id, time) is not None

    def unique_patient_count(self, date_iso: str, doctor_id: str) -> int:
        return len({a.patient_id for a in self.appointments_on(date_iso, doctor_id)})

    def next_appointment(
        self, date_iso: str, doctor_id: str, today_iso: str, now_hhmm: str
    ) -> Optional[Appointment]:
        """Earliest appointment of the day; for today, the earliest not yet started.

        When every appointment of today is already behind us, fall back to the
        day's first one so the dashboard always has something to point at.
        """
        day = self.appointments_on(date_iso, doctor_id)
        if not day:
            return None
        if date_iso != today_iso:
            return day[0]
        return next((a for a in day if a.time >= now_hhmm), day[0])

    def week_summary(self, start_date: str, doctor_id: str) -> list[DaySummary]:
        summary = []
        for offset in range(7):
            d = add_days(start_date, offset)
            day = self.appointments_on(d, doctor_id)
            summary.append(
                DaySummary(
                    date=d,
                    appointment_count=len(day),
                    unique_patient_count=len({a.patient_id for a in day}),
                    blocked_count=len(self.blocked_on(d, doctor_id)),
                )
            )
        return summary

    def patient_appointments(self, patient_id: str) -> list[Appointment]:
        mine = [a for a in self.snapshot.appointments if a.patient_id == patient_id]
        return sorted(mine, key=lambda a: (a.date, a.time))

    def patient_appointment_on(self, date_iso: str, doctor_id: str, patient_id: str) -> Optional[Appointment]:
        return next((a for a in self.appointments_on(date_iso, doctor_id) if a.patient_id == patient_id), None)

    # Slot status -----------------------------------------------------------

    def slot_status(self, date_iso: str, doctor_id: str, time: str, today_iso: str) -> SlotStatus:
        if is_day_closed(date_iso, today_iso):
            return "closed"
        if self.is_blocked(date_iso, doctor_id, time):
            return "blocked"
        if self.appointment_at(date_iso, doctor_id, time):
            return "booked"
        return "open"

    def day_view(self, date_iso: str, doctor_id: str, today_iso: str) -> DayView:
        rows = []
        for row in build_schedule_rows():
            if not isinstance(row, TimeRow):
                rows.append(DayRow(row=row))
                continue
            rows.append(
                DayRow(
                    row=row,
                    status=self.slot_status(date_iso, doctor_id, row.start, today_iso),
                    appointment=self.appointment_at(date_iso, doctor_id, row.start),
                    blocked_slot=self.blocked_at(date_iso, doctor_id, row.start),
                )
            )
        return DayView(
            date=date_iso,
            doctor_id=doctor_id,
            closed=is_day_closed(date_iso, today_iso),
            appointment_count=len(self.appointments_on(date_iso, doctor_id)),
            unique_patient_count=self.unique_patient_count(date_iso, doctor_id),
            blocked_count=len(self.blocked_on(date_iso, doctor_id)),
            rows=rows,
        )


class ScheduleState:
    """Holds the current snapshot for one or more doctors.

    Writers build a complete new snapshot and hand it to ``commit``; readers call
    ``view()`` once and work off that object, so they never observe a change
    halfway through. Serializing writers is the engine's job.
    """

    def __init__(self, snapshot: ScheduleSnapshot | None = None) -> None:
        initial = snapshot or ScheduleSnapshot()
        check_consistency(initial)
        self._snapshot = initial

    @property
    def snapshot(self) -> ScheduleSnapshot:
        return self._snapshot

    def view(self) -> ScheduleView:
        return ScheduleView(self._snapshot)

    def commit(self, snapshot: ScheduleSnapshot) -> None:
        check_consistency(snapshot)
        self._snapshot = snapshot
        logger.debug(
            "Committed snapshot: appointments=%d blocked=%d",
            len(snapshot.appointments),
            len(snapshot.blocked_slots),
        )
