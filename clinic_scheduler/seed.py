"""Demo calendar: one doctor, three patients, a few bookings today."""
from __future__ import annotations

from .models import Appointment, BlockedSlot, Doctor, Patient, PatientReport, ScheduleSnapshot


def demo_snapshot(today_iso: str, doctor_id: str = "d1", doctor_name: str = "Dr. Aylin") -> ScheduleSnapshot:
    return ScheduleSnapshot(
        doctors=(Doctor(id=doctor_id, name=doctor_name),),
        patients=(
            Patient(id="p1", full_name="Merve K.", phone="05xx xxx xx xx", birth_year=1996, notes="Allergy: penicillin"),
            Patient(id="p2", full_name="Ahmet T.", phone="05xx xxx xx xx", birth_year=1988, notes="Diabetes"),
            Patient(id="p3", full_name="Selin Y.", phone="05xx xxx xx xx", birth_year=2001),
        ),
        appointments=(
            Appointment(id="a1", date=today_iso, time="10:00", doctor_id=doctor_id, patient_id="p1", reason="Check-up"),
            Appointment(id="a2", date=today_iso, time="10:30", doctor_id=doctor_id, patient_id="p2", reason="New patient"),
            Appointment(id="a3", date=today_iso, time="15:00", doctor_id=doctor_id, patient_id="p3", reason="Pain"),
        ),
        blocked_slots=(
            BlockedSlot(id="b1", date=today_iso, doctor_id=doctor_id, time="11:00", reason="Meeting"),
        ),
    )


def demo_reports(created_at: str) -> list[PatientReport]:
    return [
        PatientReport(
            id="r1",
            patient_id="p1",
            title="Examination note",
            body="General condition good. Follow-up in 2 weeks.",
            created_at=created_at,
        )
    ]
