from typing import Literal, Optional

from pydantic import BaseModel, Field

ISO_DATE = r"^\d{4}-\d{2}-\d{2}$"
HHMM = r"^\d{2}:\d{2}$"

SlotStatus = Literal["closed", "blocked", "booked", "open"]
MediaKind = Literal["xray", "mr", "prescription", "report", "other"]
Sender = Literal["doctor", "patient"]


class Doctor(BaseModel):
    model_config = {"frozen": True}

    id: str
    name: str
    specialization: Optional[str] = None


class Patient(BaseModel):
    model_config = {"frozen": True}

    id: str
    full_name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    birth_year: Optional[int] = None
    notes: Optional[str] = None


class Appointment(BaseModel):
    model_config = {"frozen": True}

    id: str
    date: str = Field(pattern=ISO_DATE)
    time: str = Field(pattern=HHMM)
    doctor_id: str
    patient_id: str
    reason: Optional[str] = None


class BlockedSlot(BaseModel):
    """A grid slot the doctor closed (meeting, surgery, leave...)."""
    model_config = {"frozen": True}

    id: str
    date: str = Field(pattern=ISO_DATE)
    doctor_id: str
    time: str = Field(pattern=HHMM)
    reason: Optional[str] = None


class ChatMessage(BaseModel):
    model_config = {"frozen": True}

    id: str
    at: str = Field(pattern=HHMM)
    sender: Sender
    text: str


class ChatThread(BaseModel):
    model_config = {"frozen": True}

    appointment_id: str
    started: bool = False
    messages: tuple[ChatMessage, ...] = ()


class ScheduleSnapshot(BaseModel):
    """Complete schedule state; replaced as a whole on every committed change."""
    model_config = {"frozen": True}

    doctors: tuple[Doctor, ...] = ()
    patients: tuple[Patient, ...] = ()
    appointments: tuple[Appointment, ...] = ()
    blocked_slots: tuple[BlockedSlot, ...] = ()


# Grid rows ------------------------------------------------------------------

class TimeRow(BaseModel):
    """A bookable half-hour window."""
    model_config = {"frozen": True}

    kind: Literal["time"] = "time"
    start: str
    end: str


class BreakRow(BaseModel):
    model_config = {"frozen": True}

    kind: Literal["break"] = "break"
    label: str
    start: str
    end: str


# Derived views --------------------------------------------------------------

class DaySummary(BaseModel):
    date: str
    appointment_count: int
    unique_patient_count: int
    blocked_count: int = 0


class DayRow(BaseModel):
    row: TimeRow | BreakRow
    status: Optional[SlotStatus] = None  # None for the break row
    appointment: Optional[Appointment] = None
    blocked_slot: Optional[BlockedSlot] = None


class DayView(BaseModel):
    date: str
    doctor_id: str
    closed: bool
    appointment_count: int
    unique_patient_count: int
    blocked_count: int
    rows: list[DayRow]


class ChatCandidate(BaseModel):
    appointment: Appointment
    minutes: int
    can_start: bool


# Engine results -------------------------------------------------------------

class BlockResult(BaseModel):
    action: Literal["blocked", "unblocked"]
    slot: BlockedSlot


class MoveResult(BaseModel):
    status: Literal["moved", "swapped", "unchanged"]
    appointment: Appointment
    with_appointment_id: Optional[str] = None


# Patient files --------------------------------------------------------------

class PatientMedia(BaseModel):
    model_config = {"frozen": True}

    id: str
    patient_id: str
    kind: MediaKind
    file_name: str
    file_size: int = 0
    mime_type: str = "application/octet-stream"
    url: str
    note: Optional[str] = None
    uploaded_at: str  # ISO-8601 dateTime


class PatientReport(BaseModel):
    model_config = {"frozen": True}

    id: str
    patient_id: str
    title: str
    body: str
    created_at: str  # ISO-8601 dateTime


# Request bodies -------------------------------------------------------------

class BookRequest(BaseModel):
    date: str = Field(pattern=ISO_DATE)
    time: str = Field(pattern=HHMM)
    patient_id: str
    doctor_id: Optional[str] = None  # defaults to the configured doctor
    reason: Optional[str] = None


class MoveRequest(BaseModel):
    target_time: str = Field(pattern=HHMM)
    view_date: str = Field(pattern=ISO_DATE)
    view_doctor_id: Optional[str] = None


class BlockRequest(BaseModel):
    date: str = Field(pattern=ISO_DATE)
    time: str = Field(pattern=HHMM)
    doctor_id: Optional[str] = None
    reason: Optional[str] = None


class MessageRequest(BaseModel):
    text: str
    sender: Sender = "doctor"


class MediaRequest(BaseModel):
    kind: MediaKind = "other"
    file_name: str
    file_size: int = Field(default=0, ge=0)
    mime_type: str = "application/octet-stream"
    url: str
    note: Optional[str] = None


class ReportRequest(BaseModel):
    title: str
    body: str


class GateResponse(BaseModel):
    appointment_id: str
    minutes: int
    can_open: bool
