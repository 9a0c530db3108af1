from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class Settings:
    api_key: str = ""

    # The doctor whose calendar this instance serves
    doctor_id: str = "d1"
    doctor_name: str = "Dr. Aylin"

    # Start from the demo snapshot (seed.py) instead of an empty calendar
    seed_demo: bool = True

    # With offline mode on, bookings stay in memory and nothing is written to the store
    offline_mode: bool = True
    store_base_url: str = ""
    store_token_url: str = ""
    store_client_id: str | None = None
    store_client_secret: str | None = None
    store_timeout_seconds: float = 15.0
    # How many times a store write is attempted before giving up
    store_retry_attempts: int = 3

    notify_webhook_url: str | None = None
    log_level: str = "INFO"


def _flag(name: str, default: str) -> bool:
    raw = os.getenv(name, default).strip().lower()
    return raw not in {"0", "false", "no", ""}


def _positive_int(name: str, default: str) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as e:
        raise RuntimeError(f"Invalid {name} value: {raw!r}. Expected an integer.") from e
    if value < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return value


def load_settings(dotenv_path: str | None = None) -> Settings:
    # Prefer .env in repo root; dotenv_path allows overriding in tests.
    load_dotenv(dotenv_path=dotenv_path, override=False)

    store_base_url = os.getenv("STORE_BASE_URL", "").rstrip("/")
    offline_mode = _flag("OFFLINE_MODE", "1")
    if not offline_mode and not store_base_url:
        raise RuntimeError("STORE_BASE_URL is required when OFFLINE_MODE is off")

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        raise RuntimeError(f"Invalid LOG_LEVEL value: {log_level!r}")

    try:
        timeout = float(os.getenv("STORE_TIMEOUT_SECONDS", "15"))
    except ValueError as e:
        raise RuntimeError("STORE_TIMEOUT_SECONDS must be a number") from e

    return Settings(
        api_key=os.getenv("CLINIC_API_KEY", ""),
        doctor_id=os.getenv("DOCTOR_ID", "d1"),
        doctor_name=os.getenv("DOCTOR_NAME", "Dr. Aylin"),
        seed_demo=_flag("SEED_DEMO", "1"),
        offline_mode=offline_mode,
        store_base_url=store_base_url,
        store_token_url=os.getenv("STORE_TOKEN_URL", f"{store_base_url}/oauth2/token" if store_base_url else ""),
        store_client_id=os.getenv("STORE_CLIENT_ID") or None,
        store_client_secret=os.getenv("STORE_CLIENT_SECRET") or None,
        store_timeout_seconds=timeout,
        store_retry_attempts=_positive_int("STORE_RETRY_ATTEMPTS", "3"),
        notify_webhook_url=os.getenv("NOTIFY_WEBHOOK_URL") or None,
        log_level=log_level,
    )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
