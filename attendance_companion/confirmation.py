from __future__ import annotations

import math
import threading
import uuid
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .logger import setup_logger
from .roster import AttendanceLedger, AttendanceRecordView
from .session_state import utcnow
from .submission import AttendanceSubmissionPipeline
from .tracked_face import FaceTrackState, TrackedFace


class ConfirmationUI(Protocol):
    def confirm(self, name: str, track_id: Optional[str] = None) -> bool:
        ...


@dataclass
class PendingConfirmation:
    request_id: str
    student_name: str
    track_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    answer: Optional[bool] = None
    done: threading.Event = field(default_factory=threading.Event, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "studentName": self.student_name,
            "trackId": self.track_id,
            "createdAt": self.created_at.isoformat(),
        }


class ConfirmationChannel:
    """Blocking "is this <name>?" round-trip answered from another thread.

    The frame loop calls :meth:`confirm` and waits; an operator answers through
    :meth:`answer` (the HTTP surface or a CLI prompt). Without a timeout the
    wait is unbounded; an expired wait counts as a negative answer.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self.timeout_seconds = timeout_seconds
        self._pending: Dict[str, PendingConfirmation] = {}
        self._lock = threading.Lock()
        self._closed = False
        self.logger = setup_logger(self.__class__.__name__)

    def confirm(self, name: str, track_id: Optional[str] = None) -> bool:
        request = PendingConfirmation(request_id=uuid.uuid4().hex, student_name=name, track_id=track_id)
        with self._lock:
            if self._closed:
                return False
            self._pending[request.request_id] = request

        self.logger.info("Awaiting operator confirmation %s for %s", request.request_id, name)
        answered = request.done.wait(self.timeout_seconds)
        with self._lock:
            self._pending.pop(request.request_id, None)
        if not answered:
            self.logger.info("Confirmation %s timed out", request.request_id)
            return False
        return bool(request.answer)

    def answer(self, request_id: str, accepted: bool) -> bool:
        with self._lock:
            request = self._pending.get(request_id)
        if request is None or request.done.is_set():
            return False
        request.answer = bool(accepted)
        request.done.set()
        return True

    def pending(self) -> List[PendingConfirmation]:
        with self._lock:
            return sorted(self._pending.values(), key=lambda r: r.created_at)

    def cancel_all(self) -> int:
        with self._lock:
            requests = list(self._pending.values())
        cancelled = 0
        for request in requests:
            if not request.done.is_set():
                request.answer = False
                request.done.set()
                cancelled += 1
        return cancelled

    def close(self) -> None:
        with self._lock:
            self._closed = True
        self.cancel_all()


class ManualConfirmationArbiter:
    def __init__(
        self,
        ui: ConfirmationUI,
        ledger: AttendanceLedger,
        pipeline: AttendanceSubmissionPipeline,
        event_bus: RecognitionEventBus,
        max_manual_prompts: int = 3,
    ):
        self.ui = ui
        self.ledger = ledger
        self.pipeline = pipeline
        self.event_bus = event_bus
        self.max_manual_prompts = max(1, int(max_manual_prompts))
        self.logger = setup_logger(self.__class__.__name__)

    def _publish(
        self,
        event_type: RecognitionEventType,
        tracked: TrackedFace,
        name: Optional[str],
        distance: float,
        message: str,
        success: bool = False,
    ) -> None:
        self.event_bus.publish(
            RecognitionEvent(
                type=event_type,
                track_id=tracked.track_id,
                student_id=tracked.student_id,
                student_name=name,
                confidence=distance,
                message=message,
                success=success,
                manual=True,
            )
        )

    def _already_recorded(self, tracked: TrackedFace, name: Optional[str], distance: float) -> None:
        tracked.transition(FaceTrackState.COMPLETED)
        self._publish(
            RecognitionEventType.ATTENDANCE_SKIPPED,
            tracked,
            name or tracked.student_name,
            distance,
            "Already recorded",
            success=True,
        )

    def request(self, tracked: TrackedFace, name: Optional[str], distance: float) -> Optional[Future]:
        """Run one manual confirmation round for a face in ``MANUAL_REVIEW``.

        Blocks the caller while the operator answers. Returns the submission
        future when the operator confirmed, otherwise None.
        """
        student_id = tracked.student_id
        if not student_id or not student_id.strip():
            return None
        if self.ledger.is_submitted(student_id):
            self._already_recorded(tracked, name, distance)
            return None
        if tracked.manual_prompted:
            return None
        if self.ledger.manual_prompt_count(student_id) >= self.max_manual_prompts:
            tracked.transition(FaceTrackState.MANUAL_REJECTED)
            self._publish(
                RecognitionEventType.MANUAL_REJECTED,
                tracked,
                name,
                distance,
                "Manual confirmation limit reached",
            )
            return None

        tracked.manual_prompted = True
        tracked.increment_manual_prompt_attempts()
        self.ledger.record_manual_prompt(student_id)
        self._publish(
            RecognitionEventType.MANUAL_CONFIRMATION_REQUIRED,
            tracked,
            name,
            distance,
            f"Is this {name}?",
        )
        try:
            confirmed = bool(self.ui.confirm(name or student_id, tracked.track_id))
        except Exception:
            self.logger.exception("Manual confirmation prompt failed for %s", student_id)
            confirmed = False

        if not confirmed:
            tracked.manual_prompted = False
            tracked.transition(FaceTrackState.MANUAL_REJECTED)
            self._publish(
                RecognitionEventType.MANUAL_REJECTED,
                tracked,
                name,
                distance,
                "Manual confirmation rejected",
            )
            return None

        if not self.ledger.reserve(student_id):
            tracked.manual_prompted = False
            self._already_recorded(tracked, name, distance)
            return None

        tracked.transition(FaceTrackState.MANUAL_ACCEPTED)
        tracked.submission_pending = True

        def finish(record: Optional[AttendanceRecordView]) -> None:
            try:
                if record is not None:
                    self._publish(
                        RecognitionEventType.MANUAL_CONFIRMED,
                        tracked,
                        name,
                        distance,
                        "Manual confirmation accepted",
                        success=True,
                    )
                    return
                self.ledger.release(student_id)
                self._handle_submission_failure(tracked, name, distance)
            finally:
                tracked.submission_pending = False

        return self.pipeline.submit(
            student_id,
            distance if math.isfinite(distance) else None,
            True,
            "Manual confirmation from companion",
            on_complete=finish,
        )

    def _handle_submission_failure(self, tracked: TrackedFace, name: Optional[str], distance: float) -> None:
        tracked.manual_prompted = False
        if self.ledger.manual_prompt_count(tracked.student_id) >= self.max_manual_prompts:
            tracked.transition(FaceTrackState.MANUAL_REJECTED)
            self._publish(
                RecognitionEventType.MANUAL_REJECTED,
                tracked,
                name,
                distance,
                "Manual confirmation failed after maximum retries",
            )
            return
        tracked.transition(FaceTrackState.MANUAL_REVIEW)
        self._publish(
            RecognitionEventType.MANUAL_CONFIRMATION_REQUIRED,
            tracked,
            name,
            distance,
            "Manual confirmation failed, please retry",
        )
