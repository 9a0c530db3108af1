"""Calendar and wall-clock helpers.

Dates travel through the package as ``YYYY-MM-DD`` strings and times as ``HH:MM``
strings. Both are fixed width, so plain string comparison orders them correctly.
All arithmetic uses naive local datetimes: no timezone conversion happens here.
"""
from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Callable

Clock = Callable[[], datetime]

ISO_FORMAT = "%Y-%m-%d"


def system_clock() -> datetime:
    return datetime.now()


def to_iso_date(d: date) -> str:
    """Format a date (or datetime) as zero-padded ``YYYY-MM-DD``."""
    return f"{d.year:04d}-{d.month:02d}-{d.day:02d}"


def parse_iso_date(iso: str) -> date:
    return datetime.strptime(iso, ISO_FORMAT).date()


def add_days(iso: str, delta: int) -> str:
    return to_iso_date(parse_iso_date(iso) + timedelta(days=delta))


def is_weekend(iso: str) -> bool:
    # Monday == 0 ... Saturday == 5, Sunday == 6
    return parse_iso_date(iso).weekday() >= 5


def is_past(iso: str, today_iso: str) -> bool:
    return iso < today_iso


def parse_hhmm(hhmm: str) -> tuple[int, int]:
    hh, mm = hhmm.split(":")
    hours, minutes = int(hh), int(mm)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid HH:MM value: {hhmm!r}")
    return hours, minutes


def format_hhmm(hours: int, minutes: int) -> str:
    return f"{hours:02d}:{minutes:02d}"


def add_minutes(hhmm: str, minutes: int) -> str:
    h, m = parse_hhmm(hhmm)
    total = h * 60 + m + minutes
    return format_hhmm(total // 60, total % 60)


def combine(iso: str, hhmm: str) -> datetime:
    h, m = parse_hhmm(hhmm)
    d = parse_iso_date(iso)
    return datetime(d.year, d.month, d.day, h, m)


def today_iso(now: datetime | None = None) -> str:
    return to_iso_date(now or system_clock())


def now_hhmm(now: datetime | None = None) -> str:
    current = now or system_clock()
    return format_hhmm(current.hour, current.minute)


def minutes_until(iso: str, hhmm: str, now: datetime | None = None) -> int:
    """Signed whole minutes from ``now`` to the wall-clock instant ``(iso, hhmm)``.

    Positive means the instant is in the future. Half minutes round up.
    """
    current = now or system_clock()
    delta = (combine(iso, hhmm) - current).total_seconds() / 60
    return math.floor(delta + 0.5)
