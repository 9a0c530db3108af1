"""Pager chat between the doctor and the patient of an appointment.

A thread can only be started close to the appointment time (see
``can_open_channel``). Once started it stays writable regardless of the clock.
"""
from __future__ import annotations

import logging
import threading
import uuid
from typing import Optional

from .errors import ChannelNotYetOpen, EmptyMessage, NotFound, ThreadNotStarted
from .models import Appointment, ChatCandidate, ChatMessage, ChatThread, Sender
from .notify import Notifier, safe_notify
from .schedule import ScheduleState
from .timeutils import Clock, combine, minutes_until, now_hhmm, system_clock, to_iso_date

logger = logging.getLogger(__name__)

OPENS_MINUTES_BEFORE = 120
CLOSES_MINUTES_AFTER = 15

GREETING = "Hello, your appointment starts soon. Write here whenever you are ready."


def channel_minutes(appointment: Appointment, today_iso: str, now: str) -> int:
    return minutes_until(appointment.date, appointment.time, combine(today_iso, now))


def can_open_channel(appointment: Appointment, today_iso: str, now: str) -> bool:
    """True from two hours before the appointment until fifteen minutes after it."""
    if appointment.date != today_iso:
        return False
    minutes = channel_minutes(appointment, today_iso, now)
    return -CLOSES_MINUTES_AFTER <= minutes <= OPENS_MINUTES_BEFORE


class ChatBoard:
    """Threads indexed by appointment id, created lazily on first access."""

    def __init__(
        self,
        state: ScheduleState,
        *,
        clock: Clock = system_clock,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.state = state
        self.clock = clock
        self.notifier = notifier
        self._threads: dict[str, ChatThread] = {}
        self._lock = threading.Lock()

    def _appointment(self, appointment_id: str) -> Appointment:
        appt = self.state.view().appointment(appointment_id)
        if appt is None:
            # appointment is gone (cancelled): its thread goes with it
            self._threads.pop(appointment_id, None)
            raise NotFound(f"Unknown appointment {appointment_id!r}")
        return appt

    def _now(self) -> tuple[str, str]:
        current = self.clock()
        return to_iso_date(current), now_hhmm(current)

    def thread(self, appointment_id: str) -> ChatThread:
        self._appointment(appointment_id)
        return self._threads.get(appointment_id) or ChatThread(appointment_id=appointment_id)

    def gate(self, appointment_id: str) -> tuple[int, bool]:
        appt = self._appointment(appointment_id)
        today, now = self._now()
        return channel_minutes(appt, today, now), can_open_channel(appt, today, now)

    def start(self, appointment_id: str) -> ChatThread:
        try:
            with self._lock:
                appt = self._appointment(appointment_id)
                existing = self._threads.get(appointment_id)
                if existing is not None and existing.started:
                    return existing

                today, now = self._now()
                if not can_open_channel(appt, today, now):
                    raise ChannelNotYetOpen(
                        f"Chat opens {OPENS_MINUTES_BEFORE} minutes before {appt.date} {appt.time}"
                    )

                greeting = ChatMessage(id=str(uuid.uuid4()), at=now, sender="doctor", text=GREETING)
                started = ChatThread(appointment_id=appointment_id, started=True, messages=(greeting,))
                self._threads[appointment_id] = started
        except ChannelNotYetOpen:
            safe_notify(self.notifier, "error", "Chat not started", "Only for appointments starting soon.")
            raise

        logger.info("Chat started for appointment %s", appointment_id)
        safe_notify(self.notifier, "success", "Pager chat started")
        return started

    def send(self, appointment_id: str, text: str, sender: Sender = "doctor") -> ChatMessage:
        body = text.strip()
        if not body:
            raise EmptyMessage("Message text is empty")

        with self._lock:
            self._appointment(appointment_id)
            current = self._threads.get(appointment_id)
            if current is None or not current.started:
                raise ThreadNotStarted("Start the chat before sending messages")

            _, now = self._now()
            msg = ChatMessage(id=str(uuid.uuid4()), at=now, sender=sender, text=body)
            self._threads[appointment_id] = current.model_copy(update={"messages": (*current.messages, msg)})
        return msg

    def candidates(self, date_iso: str, doctor_id: str) -> list[ChatCandidate]:
        """Today's appointments with their distance in minutes; empty on other days."""
        today, now = self._now()
        if date_iso != today:
            return []
        return [
            ChatCandidate(
                appointment=a,
                minutes=channel_minutes(a, today, now),
                can_start=can_open_channel(a, today, now),
            )
            for a in self.state.view().appointments_on(date_iso, doctor_id)
        ]

    def discard(self, appointment_id: str) -> None:
        with self._lock:
            self._threads.pop(appointment_id, None)

    def __len__(self) -> int:
        return len(self._threads)
