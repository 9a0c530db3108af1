"""Rejections returned to callers when a command cannot be applied.

A ``Rejection`` is an expected outcome (the slot is taken, the day is closed...).
It is raised before any state changes, so catching it never leaves the schedule
half-updated. ``InvariantViolation`` is different: it means the schedule was
corrupted upstream and is never caught by the package.
"""
from __future__ import annotations


class Rejection(Exception):
    code = "Rejection"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class DayClosed(Rejection):
    code = "DayClosed"


class SlotBlocked(Rejection):
    code = "SlotBlocked"


class SlotOccupied(Rejection):
    code = "SlotOccupied"


class SlotNotOnGrid(Rejection):
    code = "SlotNotOnGrid"


class DuplicateBookingSameDay(Rejection):
    code = "DuplicateBookingSameDay"


class InvalidTarget(Rejection):
    code = "InvalidTarget"


class CrossContextMove(Rejection):
    code = "CrossContextMove"


class SourceBlocked(Rejection):
    code = "SourceBlocked"


class ChannelNotYetOpen(Rejection):
    code = "ChannelNotYetOpen"


class ThreadNotStarted(Rejection):
    code = "ThreadNotStarted"


class EmptyMessage(Rejection):
    code = "EmptyMessage"


class IdempotencyKeyReused(Rejection):
    code = "IdempotencyKeyReused"


class IdempotencyKeyInFlight(Rejection):
    code = "IdempotencyKeyInFlight"


class NotFound(Rejection):
    code = "NotFound"


class InvariantViolation(RuntimeError):
    """Two records share a slot key, or a record sits off the grid."""
