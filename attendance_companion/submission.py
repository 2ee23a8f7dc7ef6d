"""Single-writer attendance submission queue.

Every outbound attendance write, roster fetch and manual roster mark for a
session runs on one dispatcher thread, so the ledger and roster only ever
see one backend outcome at a time.
"""

from __future__ import annotations

import math
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from .backend import AttendanceBackend
from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .logger import setup_logger
from .roster import (
    AttendanceLedger,
    AttendanceRecordView,
    RosterEntry,
    first_non_blank,
    is_recorded_status,
    parse_roster,
    parse_submission_response,
)
from .session_state import SessionState

CompletionCallback = Callable[[Optional[AttendanceRecordView]], None]


def determine_status(
    mark_instant: datetime,
    scheduled_start: Optional[datetime],
    late_threshold_minutes: int,
) -> str:
    if scheduled_start is None:
        return "present"
    threshold = max(0, int(late_threshold_minutes))
    if threshold == 0:
        return "late" if mark_instant > scheduled_start else "present"
    late_after = scheduled_start + timedelta(minutes=threshold)
    return "late" if mark_instant > late_after else "present"


def _finite_or_none(value: Optional[float]) -> Optional[float]:
    if value is None:
        return None
    return value if math.isfinite(value) else None


class AttendanceSubmissionPipeline:
    def __init__(
        self,
        state: SessionState,
        backend: AttendanceBackend,
        ledger: AttendanceLedger,
        event_bus: RecognitionEventBus,
        label_map: Optional[Mapping[str, str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.state = state
        self.backend = backend
        self.ledger = ledger
        self.event_bus = event_bus
        self.label_map: Dict[str, str] = dict(label_map if label_map is not None else state.label_map)
        self._clock = clock or state.now
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="attendance-dispatcher")
        self._closed = False
        self._last_task: Optional[Future] = None
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def closed(self) -> bool:
        return self._closed

    def display_name(self, student_id: str) -> str:
        return self.label_map.get(student_id, student_id)

    def submit(
        self,
        student_id: str,
        confidence: Optional[float],
        manual: bool,
        notes: Optional[str],
        status_override: Optional[str] = None,
        on_complete: Optional[CompletionCallback] = None,
    ) -> "Future[Optional[AttendanceRecordView]]":
        """Queue one attendance write.

        ``on_complete`` runs on the dispatcher thread inside the same task, so
        the returned future resolves only after the callback has finished. The
        ledger is only touched on success; callers release their own
        reservations when the callback receives ``None``.
        """
        return self._enqueue(
            self._submit_task,
            student_id,
            confidence,
            manual,
            notes,
            status_override,
            on_complete,
            fallback=lambda: self._run_callback(on_complete, None),
        )

    def load_roster(self) -> "Future[List[RosterEntry]]":
        return self._enqueue(self._load_roster_task, fallback=list)

    def mark_from_roster(
        self,
        student_id: str,
        reset_to_absent: bool = False,
    ) -> Optional["Future[Optional[AttendanceRecordView]]"]:
        student_id = (student_id or "").strip()
        if not student_id:
            return None

        existing = self.ledger.entry(student_id)
        confidence = existing.confidence if existing else None
        if reset_to_absent:
            was_submitted = self.ledger.is_submitted(student_id)
            self.ledger.release(student_id)
            reserved = False
        else:
            was_submitted = False
            reserved = self.ledger.reserve(student_id)

        def finish(record: Optional[AttendanceRecordView]) -> None:
            if record is None:
                self.logger.warning("Manual roster submission failed for %s", student_id)
                if reset_to_absent and was_submitted:
                    self.ledger.reserve(student_id)
                if reserved:
                    self.ledger.release(student_id)
                return
            friendly = first_non_blank(
                record.student_name,
                existing.full_name if existing else None,
                self.display_name(student_id),
            )
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.MANUAL_CONFIRMED,
                    student_id=student_id,
                    student_name=friendly,
                    confidence=record.confidence if record.confidence is not None else math.nan,
                    message="Manual roster reset to absent" if reset_to_absent else "Manual roster mark recorded",
                    success=True,
                    manual=True,
                )
            )

        return self.submit(
            student_id,
            confidence,
            True,
            "Manual roster reset to absent" if reset_to_absent else "Manual roster mark",
            status_override="absent" if reset_to_absent else None,
            on_complete=finish,
        )

    def roster_snapshot(self) -> List[RosterEntry]:
        return self.ledger.roster_snapshot()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until everything queued before this call has run."""
        marker: Optional[Future] = self._last_task
        if not self._closed:
            try:
                marker = self._executor.submit(lambda: None)
            except RuntimeError:
                pass
        if marker is None:
            return True
        try:
            marker.result(timeout=timeout)
        except FutureTimeoutError:
            return False
        return True

    def shutdown(self, wait: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait)

    def _enqueue(self, fn: Callable[..., Any], *args: Any, fallback: Callable[[], Any]) -> Future:
        if not self._closed:
            try:
                self._last_task = self._executor.submit(fn, *args)
                return self._last_task
            except RuntimeError:
                self._closed = True
        self.logger.warning("Submission queue closed; dropping %s", getattr(fn, "__name__", fn))
        done: Future = Future()
        done.set_result(fallback())
        return done

    def _run_callback(
        self,
        on_complete: Optional[CompletionCallback],
        record: Optional[AttendanceRecordView],
    ) -> Optional[AttendanceRecordView]:
        if on_complete is not None:
            try:
                on_complete(record)
            except Exception:
                self.logger.exception("Submission completion callback failed")
        return record

    def _submit_task(
        self,
        student_id: str,
        confidence: Optional[float],
        manual: bool,
        notes: Optional[str],
        status_override: Optional[str],
        on_complete: Optional[CompletionCallback],
    ) -> Optional[AttendanceRecordView]:
        try:
            record = self._perform_submission(student_id, confidence, manual, notes, status_override)
        except Exception as exc:
            self.logger.warning("Attendance submission error for %s: %s", student_id, exc)
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.ERROR,
                    student_id=student_id,
                    student_name=self.display_name(student_id),
                    confidence=confidence if confidence is not None else math.nan,
                    message=str(exc) or "Attendance API rejected request",
                    success=False,
                    manual=manual,
                )
            )
            record = None
        return self._run_callback(on_complete, record)

    def _perform_submission(
        self,
        student_id: str,
        confidence: Optional[float],
        manual: bool,
        notes: Optional[str],
        status_override: Optional[str],
    ) -> AttendanceRecordView:
        now = self._clock()
        status = (status_override or "").strip() or determine_status(
            now, self.state.scheduled_start, self.state.late_threshold_minutes
        )
        payload: Dict[str, Any] = {
            "sessionId": self.state.session_id,
            "studentId": student_id,
            "status": status,
        }
        resolved_confidence = _finite_or_none(confidence)
        if resolved_confidence is not None:
            payload["confidenceScore"] = resolved_confidence
        payload["markingMethod"] = "manual" if manual else "auto"
        if notes and notes.strip():
            payload["notes"] = notes

        body = self.backend.submit(payload)
        record = parse_submission_response(body, student_id, status, manual, resolved_confidence, now)
        self.ledger.upsert_entry(record, self.label_map, now)
        self.ledger.commit(record.student_id or student_id, record.status)
        self.logger.info(
            "Attendance recorded for %s (%s, %s)", student_id, record.status, payload["markingMethod"]
        )
        return record

    def _load_roster_task(self) -> List[RosterEntry]:
        try:
            records = parse_roster(self.backend.fetch_roster())
        except Exception as exc:
            self.logger.warning("Failed to load roster: %s", exc)
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.ERROR,
                    message=f"Failed to load roster: {exc}",
                    success=False,
                )
            )
            return []

        entries: List[RosterEntry] = []
        for record in records:
            if not record.student_id:
                continue
            sid = record.student_id
            entries.append(
                RosterEntry(
                    student_id=sid,
                    full_name=first_non_blank(record.student_name, self.display_name(sid)) or sid,
                    student_number=record.student_number,
                    status=first_non_blank(record.status, "pending") or "pending",
                    marked_at=record.marked_at,
                    marking_method=record.marking_method,
                    confidence=record.confidence,
                )
            )
        self.ledger.replace_roster(entries)
        recorded = sum(1 for e in entries if is_recorded_status(e.status))
        self.logger.info("Roster loaded: %d students, %d already recorded", len(entries), recorded)
        return entries
