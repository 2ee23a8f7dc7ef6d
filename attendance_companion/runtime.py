from __future__ import annotations

import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .backend import AttendanceBackend
from .camera import FrameSource
from .config import RecognitionSettings
from .confirmation import ConfirmationUI, ManualConfirmationArbiter
from .decision import RecognitionDecisionEngine
from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .logger import setup_logger
from .roster import AttendanceLedger, RosterEntry
from .session_state import SessionState
from .submission import AttendanceSubmissionPipeline
from .tracking import FaceTrackGroup, TrackReconciler
from .vision import Detector, Recognizer, is_likely_face, laplacian_variance

IDLE_SLEEP_SECONDS = 0.01
JOIN_TIMEOUT_SECONDS = 3.0


class LiveRecognitionRuntime:
    """Sequential frame loop for one session.

    capture -> quality gate -> detect -> track -> reconcile -> decide. The loop
    never waits on the network; it only blocks on frame acquisition and on an
    operator answering a manual confirmation.
    """

    def __init__(
        self,
        state: SessionState,
        settings: RecognitionSettings,
        event_bus: RecognitionEventBus,
        frame_source: FrameSource,
        detector: Detector,
        recognizer: Recognizer,
        backend: AttendanceBackend,
        confirmation_ui: ConfirmationUI,
        ledger: Optional[AttendanceLedger] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.settings = settings
        self.event_bus = event_bus
        self.frame_source = frame_source
        self.detector = detector
        self.recognizer = recognizer
        self.confirmation_ui = confirmation_ui
        self.ledger = ledger or AttendanceLedger()
        self.logger = setup_logger(self.__class__.__name__)

        label_map = state.label_map
        self.pipeline = AttendanceSubmissionPipeline(state, backend, self.ledger, event_bus, label_map)
        self.arbiter = ManualConfirmationArbiter(
            confirmation_ui,
            self.ledger,
            self.pipeline,
            event_bus,
            settings.max_manual_prompts,
        )
        self.engine = RecognitionDecisionEngine(
            settings,
            recognizer,
            self.ledger,
            self.pipeline,
            self.arbiter,
            event_bus,
            label_map=label_map,
            missing_student_ids=state.missing_student_ids,
            clock=clock,
        )
        self.track_group = FaceTrackGroup(clock=clock)
        self.reconciler = TrackReconciler(event_bus, settings.warmup_frames)

        self.stop_event = threading.Event()
        self.worker: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self._running = False
        self._closed = False
        self._overlay_lock = threading.Lock()
        self._overlay: List[Dict[str, Any]] = []

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._running or self._closed:
                return
            self._running = True

        try:
            self.frame_source.open()
        except Exception:
            self._running = False
            try:
                self.frame_source.close()
            except Exception:
                self.logger.exception("Failed to close frame source after open failure")
            raise

        self.event_bus.publish(
            RecognitionEvent(
                type=RecognitionEventType.CAMERA_STARTED,
                message="Camera started",
                success=True,
            )
        )
        self.pipeline.load_roster()

        self.stop_event.clear()
        self.worker = threading.Thread(target=self._loop, name="companion-recognition-loop", daemon=True)
        self.worker.start()
        self.logger.info("Recognition loop started for session %s", self.state.session_id)

    def _loop(self) -> None:
        interval = self.settings.frame_interval_seconds
        while not self.stop_event.is_set():
            try:
                frame = self.frame_source.next_frame()
                if frame is None:
                    self.stop_event.wait(IDLE_SLEEP_SECONDS)
                    continue
                self.process_frame(frame)
            except Exception as exc:
                self.logger.warning("Recognition loop error: %s", exc, exc_info=True)
                self.event_bus.publish(
                    RecognitionEvent(
                        type=RecognitionEventType.ERROR,
                        message=str(exc) or exc.__class__.__name__,
                    )
                )
            self.stop_event.wait(interval)

    def process_frame(self, frame: np.ndarray) -> List[Future]:
        if frame is None or frame.size == 0:
            return []

        variance = laplacian_variance(frame)
        if variance < self.settings.blur_threshold:
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.FRAME_PROCESSED,
                    confidence=variance,
                    message="Frame rejected: too blurry",
                )
            )
            return []

        height, width = frame.shape[:2]
        detections = [
            box
            for box in self.detector.detect(frame)
            if is_likely_face(box, width, height, self.settings.min_face)
        ]
        tracks = self.track_group.update(detections)
        faces = self.reconciler.reconcile(tracks)
        futures = self.engine.evaluate_all(faces, frame)

        overlay = [face.to_overlay() for face in self.reconciler.faces()]
        with self._overlay_lock:
            self._overlay = overlay
        return futures

    def overlay(self) -> List[Dict[str, Any]]:
        with self._overlay_lock:
            return list(self._overlay)

    def mark_from_roster(self, student_id: str, reset_to_absent: bool = False) -> Optional[Future]:
        return self.pipeline.mark_from_roster(student_id, reset_to_absent)

    def roster_snapshot(self) -> List[RosterEntry]:
        return self.pipeline.roster_snapshot()

    def close(self) -> None:
        with self._lifecycle_lock:
            if self._closed:
                return
            self._closed = True
            self._running = False

        self.stop_event.set()
        # Unblocks a frame loop waiting on an operator and refuses new prompts.
        close_confirmations = getattr(self.confirmation_ui, "close", None)
        if callable(close_confirmations):
            close_confirmations()

        worker = self.worker
        if worker is not None and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=JOIN_TIMEOUT_SECONDS)
            if worker.is_alive():
                self.logger.warning("Recognition loop did not stop within %.1fs", JOIN_TIMEOUT_SECONDS)
        self.worker = None

        try:
            self.frame_source.close()
        except Exception:
            self.logger.exception("Failed to close frame source")
        self.pipeline.shutdown(wait=False)
        self.reconciler.clear()
        self.track_group.clear()
        with self._overlay_lock:
            self._overlay = []

        self.event_bus.publish(
            RecognitionEvent(
                type=RecognitionEventType.CAMERA_STOPPED,
                message="Camera stopped",
                success=True,
            )
        )
        self.logger.info("Recognition loop stopped for session %s", self.state.session_id)
