import asyncio

import httpx
import pytest
import respx
from fastapi.testclient import TestClient
from tenacity import wait_none

from clinic_scheduler import client as cl
from clinic_scheduler.api import create_app
from clinic_scheduler.config import Settings

from conftest import TODAY, FixedClock, RecordingNotifier, make_snapshot

AUTH = {"Authorization": "Bearer test-key"}
STORE = "https://store.test"
TOKEN_RESP = {"access_token": "fake", "expires_in": 3600}


def _client(**overrides) -> tuple[TestClient, object]:
    settings = Settings(api_key="test-key", seed_demo=False, **overrides)
    app = create_app(settings, snapshot=make_snapshot(), clock=FixedClock(), notifier=RecordingNotifier())
    return TestClient(app), app.state.clinic


@pytest.fixture
def api():
    test_client, _ = _client()
    return test_client


@pytest.fixture
def online(monkeypatch):
    monkeypatch.setattr(cl, "_RETRY_WAIT", wait_none())
    return _client(
        offline_mode=False,
        store_base_url=f"{STORE}/api",
        store_client_id="dummy",
        store_client_secret="dummy",
    )


def _book(api, time="11:00", patient_id="p4", key=None):
    headers = dict(AUTH)
    if key:
        headers["X-Idempotency-Key"] = key
    return api.post(
        "/appointments",
        json={"date": TODAY, "time": time, "patient_id": patient_id, "reason": "Control"},
        headers=headers,
    )


def test_requires_bearer_key(api):
    assert api.get("/grid").status_code == 401
    assert api.get("/grid", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_grid(api):
    rows = api.get("/grid", headers=AUTH).json()
    assert len(rows) == 15
    assert rows[8]["kind"] == "break"


def test_day_view(api):
    resp = api.get(f"/days/{TODAY}", headers=AUTH)
    assert resp.status_code == 200
    day = resp.json()
    assert day["closed"] is False
    status = {r["row"]["start"]: r["status"] for r in day["rows"]}
    assert status["10:00"] == "booked"
    assert status["12:00"] == "blocked"
    assert status["11:00"] == "open"


def test_invalid_date_is_422(api):
    assert api.get("/days/2025-13-40", headers=AUTH).status_code == 422


def test_day_listings(api):
    assert [a["id"] for a in api.get(f"/days/{TODAY}/appointments", headers=AUTH).json()] == ["a1", "a2", "a3"]
    assert [b["id"] for b in api.get(f"/days/{TODAY}/blocked", headers=AUTH).json()] == ["b1"]
    assert api.get(f"/days/{TODAY}/next", headers=AUTH).json()["id"] == "a3"
    week = api.get(f"/weeks/{TODAY}", headers=AUTH).json()
    assert len(week) == 7 and week[0]["appointment_count"] == 3


def test_book_returns_key(api):
    resp = _book(api)
    assert resp.status_code == 201
    assert resp.headers["X-Idempotency-Key"]
    assert resp.json()["time"] == "11:00"


def test_same_key_books_once(api):
    first = _book(api, key="k-1")
    second = _book(api, key="k-1")
    assert first.status_code == 201
    assert second.status_code == 200
    assert second.headers["Idempotent-Replay"] == "true"
    assert second.json()["id"] == first.json()["id"]
    day = api.get(f"/days/{TODAY}/appointments", headers=AUTH).json()
    assert [a["time"] for a in day].count("11:00") == 1


def test_same_key_other_request_is_refused(api):
    _book(api, key="k-1")
    resp = _book(api, time="11:30", key="k-1")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "IdempotencyKeyReused"


@pytest.mark.parametrize(
    "time, patient_id, status, code",
    [
        ("12:00", "p4", 409, "SlotBlocked"),
        ("10:00", "p4", 409, "SlotOccupied"),
        ("16:00", "p1", 409, "DuplicateBookingSameDay"),
        ("13:00", "p4", 422, "SlotNotOnGrid"),
        ("11:00", "ghost", 404, "NotFound"),
    ],
)
def test_book_rejections(api, time, patient_id, status, code):
    resp = _book(api, time=time, patient_id=patient_id)
    assert resp.status_code == status
    assert resp.json()["error"]["code"] == code


def test_book_on_weekend(api):
    resp = api.post("/appointments", json={"date": "2025-12-20", "time": "09:00", "patient_id": "p4"}, headers=AUTH)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "DayClosed"


def test_move_and_swap(api):
    moved = api.post("/appointments/a1/move", json={"target_time": "11:00", "view_date": TODAY}, headers=AUTH)
    assert moved.json()["status"] == "moved"

    swapped = api.post("/appointments/a1/move", json={"target_time": "10:30", "view_date": TODAY}, headers=AUTH)
    body = swapped.json()
    assert body["status"] == "swapped" and body["with_appointment_id"] == "a2"

    cross = api.post("/appointments/a1/move", json={"target_time": "09:00", "view_date": "2025-12-16"}, headers=AUTH)
    assert cross.json()["error"]["code"] == "CrossContextMove"


def test_block_toggle_and_unblock(api):
    blocked = api.post("/blocks", json={"date": TODAY, "time": "11:00", "reason": "Surgery"}, headers=AUTH).json()
    assert blocked["action"] == "blocked"
    assert _book(api).json()["error"]["code"] == "SlotBlocked"

    again = api.post("/blocks", json={"date": TODAY, "time": "11:00"}, headers=AUTH).json()
    assert again["action"] == "unblocked"

    assert api.delete("/blocks/b1", headers=AUTH).json()["time"] == "12:00"
    assert api.delete("/blocks/b1", headers=AUTH).status_code == 404


def test_cancel(api):
    assert api.delete("/appointments/a2", headers=AUTH).json()["id"] == "a2"
    assert api.delete("/appointments/a2", headers=AUTH).status_code == 404


def test_chat_flow(api):
    assert api.get("/appointments/a3/chat/gate", headers=AUTH).json() == {
        "appointment_id": "a3",
        "minutes": 60,
        "can_open": True,
    }
    not_started = api.post("/appointments/a3/chat/messages", json={"text": "hi"}, headers=AUTH)
    assert not_started.json()["error"]["code"] == "ThreadNotStarted"

    assert api.post("/appointments/a3/chat/start", headers=AUTH).json()["started"] is True
    sent = api.post("/appointments/a3/chat/messages", json={"text": "hi", "sender": "patient"}, headers=AUTH)
    assert sent.status_code == 201
    assert len(api.get("/appointments/a3/chat", headers=AUTH).json()["messages"]) == 2

    too_early = api.post("/appointments/a1/chat/start", headers=AUTH)
    assert too_early.status_code == 403
    assert too_early.json()["error"]["code"] == "ChannelNotYetOpen"

    chats = api.get(f"/days/{TODAY}/chats", headers=AUTH).json()
    assert [c["can_start"] for c in chats] == [False, False, True]


def test_patient_files(api):
    assert api.get("/patients/p1", headers=AUTH).json()["full_name"] == "Merve K."
    assert api.get("/patients/ghost", headers=AUTH).status_code == 404
    assert [a["id"] for a in api.get("/patients/p1/appointments", headers=AUTH).json()] == ["a1"]

    media = api.post(
        "/patients/p1/media",
        json={"kind": "xray", "file_name": "chest.png", "file_size": 2048, "url": "blob:chest"},
        headers=AUTH,
    ).json()
    assert [m["id"] for m in api.get("/patients/p1/media", headers=AUTH).json()] == [media["id"]]
    assert api.delete(f"/media/{media['id']}", headers=AUTH).status_code == 200
    assert api.get("/patients/p1/media", headers=AUTH).json() == []

    report = api.post("/patients/p1/reports", json={"title": "Note", "body": "All good"}, headers=AUTH)
    assert report.status_code == 201
    assert api.post("/patients/p1/reports", json={"title": " ", "body": "x"}, headers=AUTH).status_code == 422
    assert len(api.get("/patients/p1/reports", headers=AUTH).json()) == 1
    assert api.delete(f"/reports/{report.json()['id']}", headers=AUTH).status_code == 200


# Write-through to the backing store ----------------------------------------


def test_retried_booking_reaches_store_once(online):
    api, clinic = online
    with respx.mock(base_url=STORE) as m:
        m.post("/api/oauth2/token").respond(200, json=TOKEN_RESP)
        put = m.put(path__regex=r"^/api/Appointment/.+$").respond(201, json={})

        first = _book(api, key="k-42")
        second = _book(api, key="k-42")

        assert first.status_code == 201 and second.status_code == 200
        assert put.call_count == 1
        assert put.calls.last.request.headers["X-Idempotency-Key"] == "k-42"
    assert len(clinic.state.view().appointments_on(TODAY, "d1")) == 4


def test_store_retry_keeps_one_appointment(online):
    api, clinic = online
    with respx.mock(base_url=STORE) as m:
        m.post("/api/oauth2/token").respond(200, json=TOKEN_RESP)
        put = m.put(path__regex=r"^/api/Appointment/.+$")
        put.side_effect = [httpx.Response(503), httpx.Response(201, json={})]

        assert _book(api, key="k-7").status_code == 201
        assert put.call_count == 2
    assert len(clinic.state.view().appointments_on(TODAY, "d1")) == 4


def test_store_outage_rolls_back_booking(online):
    api, clinic = online
    with respx.mock(base_url=STORE) as m:
        m.post("/api/oauth2/token").respond(200, json=TOKEN_RESP)
        m.put(path__regex=r"^/api/Appointment/.+$").respond(503)

        assert _book(api, key="k-9").status_code == 502
    assert clinic.state.view().appointment_at(TODAY, "d1", "11:00") is None
    assert clinic.bookings.replay("k-9", {}) is None
    titles = [title for _, title, _ in clinic.notifier.messages]
    assert "Appointment cancelled" not in titles


def _payload(time="11:00"):
    return {"date": TODAY, "time": time, "patient_id": "p4", "reason": "Control"}


@pytest.mark.asyncio
async def test_retry_while_store_write_pending_is_not_replayed(monkeypatch):
    test_client, clinic = _client(offline_mode=False, store_base_url=f"{STORE}/api")
    entered, release = asyncio.Event(), asyncio.Event()

    async def failing_push(appt, key):
        entered.set()
        await release.wait()
        raise httpx.ConnectError("store unreachable")

    monkeypatch.setattr(cl, "push_appointment", failing_push)
    headers = {**AUTH, "X-Idempotency-Key": "k-1"}
    transport = httpx.ASGITransport(app=test_client.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        first = asyncio.create_task(http.post("/appointments", json=_payload(), headers=headers))
        await entered.wait()

        retry = await http.post("/appointments", json=_payload(), headers=headers)
        assert retry.status_code == 409
        assert retry.json()["error"]["code"] == "IdempotencyKeyInFlight"

        release.set()
        assert (await first).status_code == 502

    assert clinic.state.view().appointment_at(TODAY, "d1", "11:00") is None
    # once settled, the same key may be retried
    assert clinic.bookings.replay("k-1", {**_payload(), "doctor_id": "d1"}) is None


def test_rollback_answers_502_even_if_booking_already_gone(monkeypatch):
    api, clinic = _client(offline_mode=False, store_base_url=f"{STORE}/api")

    async def push_after_concurrent_delete(appt, key):
        clinic.engine.cancel(appt.id)
        raise httpx.ConnectError("store unreachable")

    monkeypatch.setattr(cl, "push_appointment", push_after_concurrent_delete)
    assert _book(api, key="k-3").status_code == 502


def test_cancel_drops_chat_thread(api):
    clinic = api.app.state.clinic
    api.post("/appointments/a3/chat/start", headers=AUTH)
    assert len(clinic.chat) == 1
    assert api.delete("/appointments/a3", headers=AUTH).status_code == 200
    assert len(clinic.chat) == 0
