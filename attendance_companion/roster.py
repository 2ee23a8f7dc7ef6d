"""Roster projection and the per-session submitted-student ledger."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .session_state import parse_instant

RECORDED_STATUSES = frozenset({"present", "late"})


def first_non_blank(*values: Any) -> Optional[str]:
    for value in values:
        if value is None:
            continue
        trimmed = str(value).strip()
        if trimmed:
            return trimmed
    return None


def _text(node: Mapping[str, Any], key: str) -> Optional[str]:
    value = node.get(key)
    if value is None or isinstance(value, (dict, list)):
        return None
    return first_non_blank(value)


def _number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def is_recorded_status(status: Optional[str]) -> bool:
    return status is not None and status.strip().lower() in RECORDED_STATUSES


@dataclass(frozen=True)
class AttendanceRecordView:
    student_id: Optional[str]
    status: Optional[str] = None
    marked_at: Optional[datetime] = None
    marking_method: Optional[str] = None
    confidence: Optional[float] = None
    student_name: Optional[str] = None
    student_number: Optional[str] = None


@dataclass(frozen=True)
class RosterEntry:
    student_id: str
    full_name: str
    student_number: Optional[str] = None
    status: str = "pending"
    marked_at: Optional[datetime] = None
    marking_method: Optional[str] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "fullName": self.full_name,
            "studentNumber": self.student_number,
            "status": self.status,
            "markedAt": self.marked_at.isoformat() if self.marked_at else None,
            "markingMethod": self.marking_method,
            "confidence": self.confidence,
        }


def parse_record(node: Any) -> Optional[AttendanceRecordView]:
    """Parse one backend attendance record; non-mapping input yields None."""
    if not isinstance(node, Mapping):
        return None
    student = node.get("student")
    if not isinstance(student, Mapping):
        student = {}
    return AttendanceRecordView(
        student_id=_text(node, "studentId"),
        status=_text(node, "status"),
        marked_at=parse_instant(_text(node, "markedAt")),
        marking_method=_text(node, "markingMethod"),
        confidence=_number(node.get("confidenceScore")),
        student_name=_text(student, "fullName"),
        student_number=_text(student, "studentNumber"),
    )


def parse_submission_response(
    body: Optional[Mapping[str, Any]],
    fallback_student_id: str,
    fallback_status: str,
    manual: bool,
    confidence: Optional[float],
    now: datetime,
) -> AttendanceRecordView:
    """Parse the backend's reply to a submission, filling gaps from the request."""
    method = "manual" if manual else "auto"
    fallback_confidence = _number(confidence)
    parsed = parse_record(body) if body else None
    if parsed is None:
        return AttendanceRecordView(
            student_id=fallback_student_id,
            status=fallback_status,
            marked_at=now,
            marking_method=method,
            confidence=fallback_confidence,
        )
    return replace(
        parsed,
        student_id=parsed.student_id or fallback_student_id,
        status=parsed.status or fallback_status,
        marking_method=parsed.marking_method or method,
        confidence=parsed.confidence if parsed.confidence is not None else fallback_confidence,
    )


def parse_roster(payload: Iterable[Any]) -> List[AttendanceRecordView]:
    records = []
    for node in payload or []:
        record = parse_record(node)
        if record is not None:
            records.append(record)
    return records


class AttendanceLedger:
    """Submitted-student set, roster map and manual prompt counts for one session.

    ``reserve`` is the compare-and-set that makes attendance at-most-once: a
    student id can only be reserved by one caller until it is released.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._submitted: set[str] = set()
        self._entries: Dict[str, RosterEntry] = {}
        self._order: List[str] = []
        self._manual_prompts: Dict[str, int] = {}

    def reserve(self, student_id: str) -> bool:
        with self._lock:
            if student_id in self._submitted:
                return False
            self._submitted.add(student_id)
            return True

    def release(self, student_id: str) -> None:
        with self._lock:
            self._submitted.discard(student_id)

    def record_manual_prompt(self, student_id: str) -> int:
        with self._lock:
            count = self._manual_prompts.get(student_id, 0) + 1
            self._manual_prompts[student_id] = count
            return count

    def manual_prompt_count(self, student_id: Optional[str]) -> int:
        if not student_id:
            return 0
        with self._lock:
            return self._manual_prompts.get(student_id, 0)

    def is_submitted(self, student_id: Optional[str]) -> bool:
        if not student_id:
            return False
        with self._lock:
            return student_id in self._submitted

    def submitted(self) -> frozenset:
        with self._lock:
            return frozenset(self._submitted)

    def commit(self, student_id: str, status: Optional[str]) -> None:
        with self._lock:
            if is_recorded_status(status):
                self._submitted.add(student_id)
            else:
                self._submitted.discard(student_id)

    def upsert_entry(
        self,
        record: AttendanceRecordView,
        label_map: Mapping[str, str],
        now: datetime,
    ) -> Optional[RosterEntry]:
        """Merge a record into the roster, preferring the record's values."""
        student_id = record.student_id
        if not student_id:
            return None
        with self._lock:
            existing = self._entries.get(student_id)
            entry = RosterEntry(
                student_id=student_id,
                full_name=first_non_blank(
                    record.student_name,
                    existing.full_name if existing else None,
                    label_map.get(student_id, student_id),
                )
                or student_id,
                student_number=first_non_blank(
                    record.student_number, existing.student_number if existing else None
                ),
                status=first_non_blank(record.status, existing.status if existing else "pending")
                or "pending",
                marked_at=record.marked_at or (existing.marked_at if existing else None) or now,
                marking_method=first_non_blank(
                    record.marking_method, existing.marking_method if existing else None
                ),
                confidence=record.confidence
                if record.confidence is not None
                else (existing.confidence if existing else None),
            )
            self._entries[student_id] = entry
            if student_id not in self._order:
                self._order.append(student_id)
            return entry

    def replace_roster(self, entries: Iterable[RosterEntry]) -> None:
        with self._lock:
            self._order.clear()
            for entry in entries:
                self._entries[entry.student_id] = entry
                if entry.student_id not in self._order:
                    self._order.append(entry.student_id)
                if is_recorded_status(entry.status):
                    self._submitted.add(entry.student_id)

    def entry(self, student_id: str) -> Optional[RosterEntry]:
        with self._lock:
            return self._entries.get(student_id)

    def roster_snapshot(self) -> List[RosterEntry]:
        with self._lock:
            return [self._entries[sid] for sid in self._order if sid in self._entries]
