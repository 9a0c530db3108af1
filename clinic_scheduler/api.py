import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Union

import httpx
from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import client
from .chat import ChatBoard
from .config import Settings, load_settings, setup_logging
from .directory import MediaStore, PatientDirectory, ReportStore, format_bytes
from .engine import SchedulingEngine
from .errors import NotFound, Rejection
from .idempotency import HEADER as IDEMPOTENCY_HEADER
from .idempotency import IdempotencyRegistry, issue_key
from .models import (
    Appointment,
    BlockedSlot,
    BlockRequest,
    BlockResult,
    BookRequest,
    BreakRow,
    ChatCandidate,
    ChatMessage,
    ChatThread,
    DaySummary,
    DayView,
    GateResponse,
    MediaRequest,
    MessageRequest,
    MoveRequest,
    MoveResult,
    Patient,
    PatientMedia,
    PatientReport,
    ReportRequest,
    ScheduleSnapshot,
    TimeRow,
)
from .notify import LogNotifier, Notifier, WebhookNotifier, safe_notify
from .schedule import ScheduleState
from .seed import demo_reports, demo_snapshot
from .slots import build_schedule_rows
from .timeutils import Clock, now_hhmm, parse_iso_date, system_clock, to_iso_date

logger = logging.getLogger(__name__)

STATUS_BY_CODE = {
    "NotFound": 404,
    "ChannelNotYetOpen": 403,
    "SlotNotOnGrid": 422,
    "EmptyMessage": 422,
    "IdempotencyKeyReused": 422,
    "IdempotencyKeyInFlight": 409,
}

# HTTPBearer scheme so Swagger-UI can attach the Authorization header globally
auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class Clinic:
    """Everything one running instance serves: state, engine and collaborators."""
    settings: Settings
    state: ScheduleState
    engine: SchedulingEngine
    chat: ChatBoard
    directory: PatientDirectory
    media: MediaStore
    reports: ReportStore
    bookings: IdempotencyRegistry
    notifier: Notifier
    clock: Clock


def build_clinic(
    settings: Settings,
    *,
    snapshot: Optional[ScheduleSnapshot] = None,
    clock: Clock = system_clock,
    notifier: Optional[Notifier] = None,
) -> Clinic:
    if notifier is None:
        notifier = WebhookNotifier(settings.notify_webhook_url) if settings.notify_webhook_url else LogNotifier()

    now = clock()
    reports = ReportStore(clock)
    if snapshot is None and settings.seed_demo:
        snapshot = demo_snapshot(to_iso_date(now), settings.doctor_id, settings.doctor_name)
        reports = ReportStore(clock, demo_reports(now.isoformat()))

    state = ScheduleState(snapshot)
    directory = PatientDirectory(state.snapshot.patients)
    return Clinic(
        settings=settings,
        state=state,
        engine=SchedulingEngine(state, clock=clock, notifier=notifier, directory=directory),
        chat=ChatBoard(state, clock=clock, notifier=notifier),
        directory=directory,
        media=MediaStore(clock),
        reports=reports,
        bookings=IdempotencyRegistry(),
        notifier=notifier,
        clock=clock,
    )


def get_clinic(request: Request) -> Clinic:
    return request.app.state.clinic


def verify_key(request: Request, credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)):
    """Validate Bearer token provided via Authorization header"""
    expected = get_clinic(request).settings.api_key
    if (
        credentials is None
        or credentials.scheme.lower() != "bearer"
        or not expected
        or credentials.credentials != expected
    ):
        raise HTTPException(status_code=401, detail="Invalid API key")


def _valid_date(date: str) -> str:
    try:
        parse_iso_date(date)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid date {date!r}, expected YYYY-MM-DD")
    return date


def _store_enabled(settings: Settings) -> bool:
    return not settings.offline_mode and bool(settings.store_base_url)


async def _rejection_handler(request: Request, exc: Rejection) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_CODE.get(exc.code, 409),
        content={"error": {"code": exc.code, "message": exc.message}},
    )


async def _push_or_roll_back(clinic: Clinic, appt: Appointment, key: str) -> None:
    try:
        await client.push_appointment(appt, key)
    except httpx.HTTPError as e:
        logger.error("Store write failed for %s (%s: %s), rolling back", appt.id, type(e).__name__, e)
        clinic.engine.discard(appt.id)
        clinic.chat.discard(appt.id)
        raise HTTPException(status_code=502, detail="Scheduling store unavailable")


router = APIRouter(dependencies=[Depends(verify_key)])

# Schedule queries -----------------------------------------------------------


@router.get("/grid", response_model=list[Union[TimeRow, BreakRow]])
async def grid():
    """Bookable half-hour rows of a working day, break included."""
    return build_schedule_rows()


@router.get("/days/{date}", response_model=DayView)
async def day(date: str = Depends(_valid_date), clinic: Clinic = Depends(get_clinic)):
    return clinic.state.view().day_view(date, clinic.settings.doctor_id, to_iso_date(clinic.clock()))


@router.get("/days/{date}/appointments", response_model=list[Appointment])
async def day_appointments(date: str = Depends(_valid_date), clinic: Clinic = Depends(get_clinic)):
    return clinic.state.view().appointments_on(date, clinic.settings.doctor_id)


@router.get("/days/{date}/blocked", response_model=list[BlockedSlot])
async def day_blocked(date: str = Depends(_valid_date), clinic: Clinic = Depends(get_clinic)):
    return clinic.state.view().blocked_on(date, clinic.settings.doctor_id)


@router.get("/days/{date}/next", response_model=Optional[Appointment])
async def next_appointment(date: str = Depends(_valid_date), clinic: Clinic = Depends(get_clinic)):
    """Next appointment of the day (or its first one when looking at another day)."""
    now = clinic.clock()
    return clinic.state.view().next_appointment(date, clinic.settings.doctor_id, to_iso_date(now), now_hhmm(now))


@router.get("/days/{date}/chats", response_model=list[ChatCandidate])
async def day_chats(date: str = Depends(_valid_date), clinic: Clinic = Depends(get_clinic)):
    return clinic.chat.candidates(date, clinic.settings.doctor_id)


@router.get("/weeks/{start}", response_model=list[DaySummary])
async def week(start: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.state.view().week_summary(_valid_date(start), clinic.settings.doctor_id)


# Booking commands -----------------------------------------------------------


@router.post("/appointments", response_model=Appointment, status_code=201)
async def book(
    req: BookRequest,
    response: Response,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    clinic: Clinic = Depends(get_clinic),
):
    """Book a slot. Re-sending the same idempotency key returns the first booking."""
    _valid_date(req.date)
    key = idempotency_key or issue_key()
    payload = req.model_dump()
    payload["doctor_id"] = req.doctor_id or clinic.settings.doctor_id
    response.headers[IDEMPOTENCY_HEADER] = key

    replayed = clinic.bookings.reserve(key, payload)
    if replayed is not None:
        logger.info("Replaying booking %s for idempotency key %s", replayed.id, key)
        response.status_code = 200
        response.headers["Idempotent-Replay"] = "true"
        return replayed

    # the key stays pending until the store has the booking; retries meanwhile get 409
    try:
        appt = clinic.engine.book(req.date, payload["doctor_id"], req.time, req.patient_id, req.reason)
        if _store_enabled(clinic.settings):
            await _push_or_roll_back(clinic, appt, key)
    except BaseException:
        clinic.bookings.forget(key)
        raise
    clinic.bookings.remember(key, payload, appt)
    return appt


@router.delete("/appointments/{appointment_id}", response_model=Appointment)
async def cancel(
    appointment_id: str,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    clinic: Clinic = Depends(get_clinic),
):
    if clinic.state.view().appointment(appointment_id) is None:
        raise NotFound(f"Unknown appointment {appointment_id!r}")
    if _store_enabled(clinic.settings):
        try:
            await client.cancel_appointment(appointment_id, idempotency_key or issue_key())
        except httpx.HTTPError as e:
            logger.error("Store cancel failed for %s (%s: %s)", appointment_id, type(e).__name__, e)
            raise HTTPException(status_code=502, detail="Scheduling store unavailable")
    appt = clinic.engine.cancel(appointment_id)
    clinic.chat.discard(appointment_id)
    return appt


@router.post("/appointments/{appointment_id}/move", response_model=MoveResult)
async def move(appointment_id: str, req: MoveRequest, clinic: Clinic = Depends(get_clinic)):
    """Drop an appointment on another slot of the displayed day (moves or swaps)."""
    _valid_date(req.view_date)
    return clinic.engine.move_or_swap(
        appointment_id,
        req.target_time,
        view_date=req.view_date,
        view_doctor_id=req.view_doctor_id or clinic.settings.doctor_id,
    )


@router.post("/blocks", response_model=BlockResult)
async def toggle_block(req: BlockRequest, clinic: Clinic = Depends(get_clinic)):
    _valid_date(req.date)
    return clinic.engine.block(req.date, req.doctor_id or clinic.settings.doctor_id, req.time, req.reason)


@router.delete("/blocks/{blocked_slot_id}", response_model=BlockedSlot)
async def unblock(blocked_slot_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.engine.unblock(blocked_slot_id)


# Pager chat -----------------------------------------------------------------


@router.get("/appointments/{appointment_id}/chat", response_model=ChatThread)
async def chat_thread(appointment_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.chat.thread(appointment_id)


@router.get("/appointments/{appointment_id}/chat/gate", response_model=GateResponse)
async def chat_gate(appointment_id: str, clinic: Clinic = Depends(get_clinic)):
    minutes, can_open = clinic.chat.gate(appointment_id)
    return GateResponse(appointment_id=appointment_id, minutes=minutes, can_open=can_open)


@router.post("/appointments/{appointment_id}/chat/start", response_model=ChatThread)
async def chat_start(appointment_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.chat.start(appointment_id)


@router.post("/appointments/{appointment_id}/chat/messages", response_model=ChatMessage, status_code=201)
async def chat_send(appointment_id: str, req: MessageRequest, clinic: Clinic = Depends(get_clinic)):
    return clinic.chat.send(appointment_id, req.text, req.sender)


# Patients -------------------------------------------------------------------


@router.get("/patients/{patient_id}", response_model=Patient)
async def get_patient(patient_id: str, clinic: Clinic = Depends(get_clinic)):
    """Return basic demographic info for a patient."""
    patient = clinic.directory.get_patient(patient_id)
    if patient is not None:
        return patient
    if _store_enabled(clinic.settings):
        try:
            return await client.fetch_patient(patient_id)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise NotFound(f"Unknown patient {patient_id!r}")
            raise HTTPException(status_code=502, detail="Scheduling store unavailable")
    raise NotFound(f"Unknown patient {patient_id!r}")


@router.get("/patients/{patient_id}/appointments", response_model=list[Appointment])
async def patient_appointments(patient_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.state.view().patient_appointments(patient_id)


@router.get("/patients/{patient_id}/media", response_model=list[PatientMedia])
async def list_media(patient_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.media.list(patient_id)


@router.post("/patients/{patient_id}/media", response_model=PatientMedia, status_code=201)
async def attach_media(patient_id: str, req: MediaRequest, clinic: Clinic = Depends(get_clinic)):
    if clinic.directory.get_patient(patient_id) is None:
        raise NotFound(f"Unknown patient {patient_id!r}")
    item = clinic.media.attach(patient_id, **req.model_dump())
    safe_notify(clinic.notifier, "success", "File added", f"{item.file_name} ({format_bytes(item.file_size)})")
    return item


@router.delete("/media/{media_id}", response_model=PatientMedia)
async def remove_media(media_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.media.remove(media_id)


@router.get("/patients/{patient_id}/reports", response_model=list[PatientReport])
async def list_reports(patient_id: str, clinic: Clinic = Depends(get_clinic)):
    return clinic.reports.list(patient_id)


@router.post("/patients/{patient_id}/reports", response_model=PatientReport, status_code=201)
async def add_report(patient_id: str, req: ReportRequest = Body(...), clinic: Clinic = Depends(get_clinic)):
    if not req.title.strip() or not req.body.strip():
        raise HTTPException(status_code=422, detail="title and body are required")
    if clinic.directory.get_patient(patient_id) is None:
        raise NotFound(f"Unknown patient {patient_id!r}")
    report = clinic.reports.add(patient_id, req.title, req.body)
    safe_notify(clinic.notifier, "success", "Report added", report.title)
    return report


@router.delete("/reports/{report_id}", response_model=PatientReport)
async def remove_report(report_id: str, clinic: Clinic = Depends(get_clinic)):
    report = clinic.reports.remove(report_id)
    safe_notify(clinic.notifier, "success", "Report deleted", report.title)
    return report


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # let queued webhook deliveries finish before the loop goes away
    drain = getattr(app.state.clinic.notifier, "drain", None)
    if drain is not None:
        await drain()


def create_app(
    settings: Optional[Settings] = None,
    *,
    snapshot: Optional[ScheduleSnapshot] = None,
    clock: Clock = system_clock,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    client.configure(settings)

    app = FastAPI(title="Clinic Scheduler Service", lifespan=_lifespan)
    app.state.clinic = build_clinic(settings, snapshot=snapshot, clock=clock, notifier=notifier)
    app.add_exception_handler(Rejection, _rejection_handler)
    app.include_router(router)
    logger.info(
        "Serving calendar of %s (offline=%s, store=%s)",
        settings.doctor_id,
        settings.offline_mode,
        settings.store_base_url or "-",
    )
    return app


app = create_app()
