"""In-memory patient directory and per-patient file stores.

The scheduler only ever reads patients and never looks inside files: these
stores keep whatever metadata the caller hands over, keyed by patient id.
"""
from __future__ import annotations

import threading
import uuid
from typing import Iterable, Optional

from .errors import NotFound
from .models import MediaKind, Patient, PatientMedia, PatientReport
from .timeutils import Clock, system_clock


def format_bytes(size: int) -> str:
    kb = 1024
    mb = kb * 1024
    if size >= mb:
        return f"{size / mb:.2f} MB"
    if size >= kb:
        return f"{size / kb:.1f} KB"
    return f"{size} B"


class PatientDirectory:
    def __init__(self, patients: Iterable[Patient] = ()) -> None:
        self._patients = {p.id: p for p in patients}

    def get_patient(self, patient_id: str) -> Optional[Patient]:
        return self._patients.get(patient_id)

    def all(self) -> list[Patient]:
        return sorted(self._patients.values(), key=lambda p: p.full_name)


class MediaStore:
    """X-rays, MR images, prescriptions and other uploads, newest first."""

    def __init__(self, clock: Clock = system_clock) -> None:
        self.clock = clock
        self._items: list[PatientMedia] = []
        self._lock = threading.Lock()

    def attach(
        self,
        patient_id: str,
        *,
        kind: MediaKind,
        file_name: str,
        url: str,
        file_size: int = 0,
        mime_type: str = "application/octet-stream",
        note: Optional[str] = None,
    ) -> PatientMedia:
        item = PatientMedia(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            kind=kind,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            url=url,
            note=(note or "").strip() or None,
            uploaded_at=self.clock().isoformat(),
        )
        with self._lock:
            self._items.insert(0, item)
        return item

    def list(self, patient_id: str) -> list[PatientMedia]:
        return [m for m in self._items if m.patient_id == patient_id]

    def remove(self, media_id: str) -> PatientMedia:
        with self._lock:
            hit = next((m for m in self._items if m.id == media_id), None)
            if hit is None:
                raise NotFound(f"Unknown media {media_id!r}")
            self._items.remove(hit)
        return hit


class ReportStore:
    def __init__(self, clock: Clock = system_clock, reports: Iterable[PatientReport] = ()) -> None:
        self.clock = clock
        self._reports: list[PatientReport] = list(reports)
        self._lock = threading.Lock()

    def add(self, patient_id: str, title: str, body: str) -> PatientReport:
        report = PatientReport(
            id=str(uuid.uuid4()),
            patient_id=patient_id,
            title=title.strip(),
            body=body.strip(),
            created_at=self.clock().isoformat(),
        )
        with self._lock:
            self._reports.append(report)
        return report

    def list(self, patient_id: str) -> list[PatientReport]:
        mine = [r for r in self._reports if r.patient_id == patient_id]
        return sorted(mine, key=lambda r: r.created_at, reverse=True)

    def remove(self, report_id: str) -> PatientReport:
        with self._lock:
            hit = next((r for r in self._reports if r.id == report_id), None)
            if hit is None:
                raise NotFound(f"Unknown report {report_id!r}")
            self._reports.remove(hit)
        return hit
