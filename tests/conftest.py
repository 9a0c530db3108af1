from datetime import datetime

import pytest

from clinic_scheduler.chat import ChatBoard
from clinic_scheduler.directory import PatientDirectory
from clinic_scheduler.engine import SchedulingEngine
from clinic_scheduler.models import Appointment, BlockedSlot, Doctor, Patient, ScheduleSnapshot
from clinic_scheduler.schedule import ScheduleState

# Monday; 2025-12-20/21 is the following weekend
TODAY = "2025-12-15"
NOW = datetime(2025, 12, 15, 14, 0)


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []

    def notify(self, level, title, description=""):
        self.messages.append((level, title, description))


def make_snapshot(today: str = TODAY) -> ScheduleSnapshot:
    return ScheduleSnapshot(
        doctors=(Doctor(id="d1", name="Dr. Aylin"), Doctor(id="d2", name="Dr. Emre")),
        patients=(
            Patient(id="p1", full_name="Merve K."),
            Patient(id="p2", full_name="Ahmet T."),
            Patient(id="p3", full_name="Selin Y."),
            Patient(id="p4", full_name="Deniz A."),
        ),
        appointments=(
            Appointment(id="a1", date=today, time="10:00", doctor_id="d1", patient_id="p1", reason="Check-up"),
            Appointment(id="a2", date=today, time="10:30", doctor_id="d1", patient_id="p2", reason="New patient"),
            Appointment(id="a3", date=today, time="15:00", doctor_id="d1", patient_id="p3", reason="Pain"),
        ),
        blocked_slots=(
            BlockedSlot(id="b1", date=today, doctor_id="d1", time="12:00", reason="Meeting"),
        ),
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def state() -> ScheduleState:
    return ScheduleState(make_snapshot())


@pytest.fixture
def engine(state: ScheduleState, clock: FixedClock, notifier: RecordingNotifier) -> SchedulingEngine:
    directory = PatientDirectory(state.snapshot.patients)
    return SchedulingEngine(state, clock=clock, notifier=notifier, directory=directory)


@pytest.fixture
def board(state: ScheduleState, clock: FixedClock) -> ChatBoard:
    return ChatBoard(state, clock=clock)
