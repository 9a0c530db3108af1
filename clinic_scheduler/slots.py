"""Fixed half-hour grid of a working day."""
from __future__ import annotations

from .models import BreakRow, TimeRow
from .timeutils import add_minutes, format_hhmm

SLOT_MINUTES = 30
MORNING_HOURS = range(9, 13)  # 09:00 .. 12:30
AFTERNOON_HOURS = range(14, 17)  # 14:00 .. 16:30
BREAK_START = "13:00"
BREAK_END = "14:00"


def _half_hour_rows(hours: range) -> list[TimeRow]:
    rows = []
    for h in hours:
        for m in (0, 30):
            start = format_hhmm(h, m)
            rows.append(TimeRow(start=start, end=add_minutes(start, SLOT_MINUTES)))
    return rows


def build_schedule_rows() -> list[TimeRow | BreakRow]:
    """Ordered rows for one day: morning slots, the lunch break, afternoon slots.

    The grid is the same for every date and is cheap to rebuild, so callers
    build it on demand instead of caching it.
    """
    rows: list[TimeRow | BreakRow] = []
    rows.extend(_half_hour_rows(MORNING_HOURS))
    rows.append(BreakRow(label=f"Break ({BREAK_START}-{BREAK_END})", start=BREAK_START, end=BREAK_END))
    rows.extend(_half_hour_rows(AFTERNOON_HOURS))
    return rows


def slot_times() -> list[str]:
    return [row.start for row in build_schedule_rows() if isinstance(row, TimeRow)]


def is_bookable_time(hhmm: str) -> bool:
    return hhmm in slot_times()
