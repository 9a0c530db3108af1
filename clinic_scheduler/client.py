"""Async client for the backing scheduling store (FHIR-style REST API).

Assumes OAuth2 client-credentials flow. Every write carries an idempotency key
and is retried with exponential backoff on transport errors and 5xx answers,
re-sending the same key so the store can drop duplicates.
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any

import httpx
from dotenv import load_dotenv
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import Settings
from .idempotency import HEADER as IDEMPOTENCY_HEADER
from .models import Appointment, Patient
from .slots import SLOT_MINUTES
from .timeutils import add_minutes

load_dotenv()

logger = logging.getLogger(__name__)

_BASE_URL = os.getenv("STORE_BASE_URL", "https://store.example.com/api")
_TOKEN_URL = os.getenv("STORE_TOKEN_URL", f"{_BASE_URL}/oauth2/token")
_CLIENT_ID = os.getenv("STORE_CLIENT_ID")
_CLIENT_SECRET = os.getenv("STORE_CLIENT_SECRET")
_TIMEOUT = 15.0
_RETRY_ATTEMPTS = 3
_RETRY_WAIT = wait_exponential(multiplier=0.5, min=0.5, max=4)

_DEFAULT_TOKEN_LIFETIME = 3600
_TOKEN_MARGIN_SECONDS = 300
_TOKEN_CACHE: dict[str, float | str | None] = {"token": None, "exp": 0.0}


def configure(settings: Settings) -> None:
    """Point the module at the store described by ``settings``."""
    global _BASE_URL, _TOKEN_URL, _CLIENT_ID, _CLIENT_SECRET, _TIMEOUT, _RETRY_ATTEMPTS
    if settings.store_base_url:
        _BASE_URL = settings.store_base_url
        _TOKEN_URL = settings.store_token_url or f"{_BASE_URL}/oauth2/token"
    _CLIENT_ID = settings.store_client_id
    _CLIENT_SECRET = settings.store_client_secret
    _TIMEOUT = settings.store_timeout_seconds
    _RETRY_ATTEMPTS = settings.store_retry_attempts
    _TOKEN_CACHE.update(token=None, exp=0.0)


async def _get_token() -> str:
    """Bearer token for the store, refreshed shortly before it expires."""
    cached = _TOKEN_CACHE["token"]
    if cached and time.time() < _TOKEN_CACHE["exp"]:
        return cached  # type: ignore[return-value]

    logger.debug("Requesting store token from %s", _TOKEN_URL)
    issued_at = time.time()
    grant = httpx.BasicAuth(_CLIENT_ID or "", _CLIENT_SECRET or "")
    async with httpx.AsyncClient(timeout=_TIMEOUT, auth=grant) as http:
        resp = await http.post(_TOKEN_URL, data={"grant_type": "client_credentials"})
    resp.raise_for_status()
    body = resp.json()
    lifetime = float(body.get("expires_in", _DEFAULT_TOKEN_LIFETIME))
    _TOKEN_CACHE.update(token=body["access_token"], exp=issued_at + lifetime - _TOKEN_MARGIN_SECONDS)
    return body["access_token"]


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    sleep_seconds = getattr(retry_state.next_action, "sleep", 0.0)
    logger.warning(
        "Store write attempt %s failed (%s), retrying in %.1fs",
        retry_state.attempt_number,
        type(exc).__name__ if exc else "unknown",
        sleep_seconds,
    )


async def _write(method: str, path: str, *, idempotency_key: str, **kwargs: Any) -> httpx.Response:
    headers = kwargs.pop("headers", {})
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(_RETRY_ATTEMPTS),
        wait=_RETRY_WAIT,
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_before_sleep,
        reraise=True,
    ):
        with attempt:
            headers.update(
                {
                    "Authorization": f"Bearer {await _get_token()}",
                    IDEMPOTENCY_HEADER: idempotency_key,
                }
            )
            async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
                resp = await client.request(method, f"{_BASE_URL}{path}", headers=headers, **kwargs)
                resp.raise_for_status()
    return resp


def _appointment_resource(appt: Appointment) -> dict[str, Any]:
    return {
        "resourceType": "Appointment",
        "id": appt.id,
        "status": "booked",
        "start": f"{appt.date}T{appt.time}:00",
        "end": f"{appt.date}T{add_minutes(appt.time, SLOT_MINUTES)}:00",
        "description": appt.reason,
        "participant": [
            {"actor": {"reference": f"Patient/{appt.patient_id}"}},
            {"actor": {"reference": f"Practitioner/{appt.doctor_id}"}},
        ],
    }


async def push_appointment(appt: Appointment, idempotency_key: str) -> None:
    """Create (or, on a retried key, re-acknowledge) an appointment in the store."""
    await _write(
        "PUT",
        f"/Appointment/{appt.id}",
        idempotency_key=idempotency_key,
        json=_appointment_resource(appt),
        headers={"Accept": "application/json"},
    )


async def cancel_appointment(appt_id: str, idempotency_key: str) -> None:
    """Mark an appointment as cancelled with a JSON-patch on its status."""
    patch_body = [{"op": "replace", "path": "/status", "value": "cancelled"}]
    await _write(
        "PATCH",
        f"/Appointment/{appt_id}",
        idempotency_key=idempotency_key,
        json=patch_body,
        headers={"Content-Type": "application/json-patch+json"},
    )


async def fetch_patient(patient_id: str) -> Patient:
    """Return basic demographics for a patient ID."""
    headers = {"Authorization": f"Bearer {await _get_token()}", "Accept": "application/json"}
    async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
        resp = await client.get(f"{_BASE_URL}/Patient/{patient_id}", headers=headers)
        resp.raise_for_status()
        payload = resp.json()

    name_block = payload.get("name", [{}])[0]
    given = " ".join(name_block.get("given", []))
    full_name = f"{given} {name_block.get('family', '')}".strip()
    phone = next((t.get("value") for t in payload.get("telecom", []) if t.get("system") == "phone"), None)
    birth_date = payload.get("birthDate") or ""

    return Patient(
        id=payload.get("id", patient_id),
        full_name=full_name or patient_id,
        phone=phone,
        birth_year=int(birth_date[:4]) if birth_date[:4].isdigit() else None,
    )
