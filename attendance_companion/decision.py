"""Per-face recognition decisions.

Each frame, every live ``TrackedFace`` that passes the size, warm-up, motion
and throttle gates is cropped and sent to the recognizer. The returned
distance is partitioned by two thresholds (lower is more confident)::

    distance <= auto_accept_max_distance        -> auto-accept and submit
    distance <= manual_review_max_distance      -> ask the operator
    otherwise (or unknown / excluded student)   -> ignore

Outbound writes go through the submission pipeline; the ledger reservation is
taken here, before the write is queued, and released if it fails.
"""

from __future__ import annotations

import time
from concurrent.futures import Future
from typing import Callable, Iterable, List, Mapping, Optional

import numpy as np

from .config import RecognitionSettings
from .confirmation import ManualConfirmationArbiter
from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .logger import setup_logger
from .roster import AttendanceLedger, AttendanceRecordView
from .submission import AttendanceSubmissionPipeline
from .tracked_face import FaceTrackState, TrackedFace
from .vision import UNKNOWN_LABEL, Recognizer, crop_face


class RecognitionDecisionEngine:
    def __init__(
        self,
        settings: RecognitionSettings,
        recognizer: Recognizer,
        ledger: AttendanceLedger,
        pipeline: AttendanceSubmissionPipeline,
        arbiter: ManualConfirmationArbiter,
        event_bus: RecognitionEventBus,
        label_map: Optional[Mapping[str, str]] = None,
        missing_student_ids: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.recognizer = recognizer
        self.ledger = ledger
        self.pipeline = pipeline
        self.arbiter = arbiter
        self.event_bus = event_bus
        self.label_map = dict(label_map or {})
        self.missing_student_ids = frozenset(missing_student_ids)
        self._clock = clock
        self.logger = setup_logger(self.__class__.__name__)

    def display_name(self, student_id: str) -> str:
        return self.label_map.get(student_id, student_id)

    def is_eligible(self, tracked: TrackedFace, now: float) -> bool:
        if tracked.submission_pending:
            return False
        track = tracked.track
        if not track.updated_this_frame:
            return False
        bounds = track.match_bounds
        min_face = self.settings.min_face
        if bounds.width < min_face or bounds.height < min_face:
            return False
        if track.seen_frames < self.settings.min_frames:
            return False
        if track.motion_accum < self.settings.min_motion:
            return False
        if tracked.last_attempt is not None:
            elapsed_ms = (now - tracked.last_attempt) * 1000.0
            if elapsed_ms < self.settings.attempt_interval_ms:
                return False
        return True

    def evaluate(
        self,
        tracked: TrackedFace,
        frame: np.ndarray,
        now: Optional[float] = None,
    ) -> Optional[Future]:
        """Run one decision for ``tracked``.

        Returns the queued submission future when the decision led to an
        outbound write, otherwise None.
        """
        now = self._clock() if now is None else now
        if not self.is_eligible(tracked, now):
            return None

        crop = crop_face(frame, tracked.track.match_bounds)
        if crop is None:
            return None
        prediction = self.recognizer.recognize(crop)
        if prediction is None:
            return None

        distance = float(prediction.distance)
        tracked.transition(FaceTrackState.RECOGNIZING)
        tracked.mark_attempt(now, distance)

        student_id = (prediction.student_id or "").strip()
        if not student_id or student_id.lower() == UNKNOWN_LABEL or student_id in self.missing_student_ids:
            self._handle_unknown(tracked, distance)
            return None

        name = self.display_name(student_id)
        tracked.student_id = student_id
        tracked.student_name = name

        if distance <= self.settings.auto_accept_max_distance:
            tracked.transition(FaceTrackState.AUTO_ACCEPTED)
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.AUTO_ACCEPTED,
                    track_id=tracked.track_id,
                    student_id=student_id,
                    student_name=name,
                    confidence=distance,
                    message="Auto accepted",
                    success=True,
                )
            )
            return self._auto_mark(tracked, name, distance)
        if distance <= self.settings.manual_review_max_distance:
            tracked.transition(FaceTrackState.MANUAL_REVIEW)
            return self.arbiter.request(tracked, name, distance)

        self._handle_unknown(tracked, distance)
        return None

    def evaluate_all(self, faces: Iterable[TrackedFace], frame: np.ndarray) -> List[Future]:
        futures: List[Future] = []
        for tracked in faces:
            try:
                future = self.evaluate(tracked, frame)
            except Exception as exc:
                self.logger.exception("Evaluation failed for track %s", tracked.track_id)
                self.event_bus.publish(
                    RecognitionEvent(
                        type=RecognitionEventType.ERROR,
                        track_id=tracked.track_id,
                        student_id=tracked.student_id,
                        message=str(exc) or exc.__class__.__name__,
                    )
                )
                continue
            if future is not None:
                futures.append(future)
        return futures

    def _handle_unknown(self, tracked: TrackedFace, distance: float) -> None:
        tracked.transition(FaceTrackState.IGNORED)
        self.event_bus.publish(
            RecognitionEvent(
                type=RecognitionEventType.AUTO_REJECTED,
                track_id=tracked.track_id,
                confidence=distance,
                message="Low confidence",
            )
        )

    def _auto_mark(self, tracked: TrackedFace, name: str, distance: float) -> Optional[Future]:
        student_id = tracked.student_id
        if not self.ledger.reserve(student_id):
            tracked.transition(FaceTrackState.COMPLETED)
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.ATTENDANCE_SKIPPED,
                    track_id=tracked.track_id,
                    student_id=student_id,
                    student_name=name,
                    confidence=distance,
                    message="Already recorded",
                    success=True,
                )
            )
            return None

        tracked.submission_pending = True

        def finish(record: Optional[AttendanceRecordView]) -> None:
            try:
                if record is None:
                    self.ledger.release(student_id)
                    tracked.transition(FaceTrackState.IGNORED)
                    return
                tracked.transition(FaceTrackState.COMPLETED)
                self.event_bus.publish(
                    RecognitionEvent(
                        type=RecognitionEventType.ATTENDANCE_RECORDED,
                        track_id=tracked.track_id,
                        student_id=student_id,
                        student_name=name,
                        confidence=distance,
                        message=f"Marked {(record.status or 'present').lower()}",
                        success=True,
                    )
                )
            finally:
                tracked.submission_pending = False

        return self.pipeline.submit(student_id, distance, False, "Automatic recognition", on_complete=finish)
