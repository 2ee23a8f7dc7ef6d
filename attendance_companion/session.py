"""Session lifecycle: heartbeat, scheduled auto-stop, manual stop.

``SessionRuntime`` owns one running session and tears it down in a fixed
order: mark inactive, cancel timers, stop the recognition loop (which closes
the frame source), notify the backend, close the event forwarder.
``SessionManager`` keeps at most one active ``SessionRuntime`` for the
process.
"""

from __future__ import annotations

import json
import re
import secrets
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .backend import AttendanceBackend, HttpAttendanceBackend
from .camera import OpenCvFrameSource
from .config import (
    AUTO_STOP_POLL_INTERVAL_SECONDS,
    HEARTBEAT_INTERVAL_SECONDS,
    MIN_AUTO_STOP_POLL_SECONDS,
    CompanionSettings,
    RecognitionSettings,
)
from .confirmation import ConfirmationChannel
from .events import RecognitionEventBus
from .exceptions import SessionError
from .forwarder import BackendEventForwarder
from .logger import mask_token, setup_logger
from .runtime import LiveRecognitionRuntime
from .session_state import SessionState
from .vision import HaarFaceDetector, LBPHRecognizer

TIMER_JOIN_TIMEOUT_SECONDS = 2.0
HANDSHAKE_FILE_NAME = "handshake.json"
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _close_backend(backend: AttendanceBackend) -> None:
    close = getattr(backend, "close", None)
    if callable(close):
        close()


class PeriodicTask:
    """Daemon thread running ``fn`` every ``interval`` seconds until cancelled."""

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Any],
        initial_delay: Optional[float] = None,
    ):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.initial_delay = interval if initial_delay is None else max(0.0, initial_delay)
        self.stop_event = threading.Event()
        self.worker: Optional[threading.Thread] = None
        self.logger = setup_logger(self.__class__.__name__)

    def start(self) -> None:
        if self.worker is not None:
            return
        self.worker = threading.Thread(target=self._run, name=self.name, daemon=True)
        self.worker.start()

    def _run(self) -> None:
        delay = self.initial_delay
        while not self.stop_event.wait(delay):
            try:
                self.fn()
            except Exception:
                self.logger.exception("Periodic task %s failed", self.name)
            delay = self.interval

    @property
    def cancelled(self) -> bool:
        return self.stop_event.is_set()

    def cancel(self) -> None:
        self.stop_event.set()
        worker = self.worker
        if worker is not None and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=TIMER_JOIN_TIMEOUT_SECONDS)


AutoStopHandler = Callable[["SessionRuntime", str], None]


class SessionRuntime:
    def __init__(
        self,
        state: SessionState,
        recognition_runtime: Optional[LiveRecognitionRuntime],
        event_bus: RecognitionEventBus,
        backend: AttendanceBackend,
        on_auto_stop: Optional[AutoStopHandler] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        auto_stop_poll_interval: float = AUTO_STOP_POLL_INTERVAL_SECONDS,
    ):
        self.state = state
        self.recognition_runtime = recognition_runtime
        self.event_bus = event_bus
        self.backend = backend
        self.on_auto_stop = on_auto_stop
        self.heartbeat_interval = heartbeat_interval
        self.auto_stop_poll_interval = max(MIN_AUTO_STOP_POLL_SECONDS, auto_stop_poll_interval)

        self.heartbeat_task: Optional[PeriodicTask] = None
        self.auto_stop_task: Optional[PeriodicTask] = None
        self.forwarder: Optional[BackendEventForwarder] = None
        self._auto_stop_lock = threading.Lock()
        self._auto_stop_triggered = False
        self._close_lock = threading.Lock()
        self._closed = False
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def auto_stop_triggered(self) -> bool:
        return self._auto_stop_triggered

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        self.heartbeat_task = PeriodicTask(
            "companion-session-heartbeat", self.heartbeat_interval, self.state.touch
        )
        self.heartbeat_task.start()
        self.forwarder = BackendEventForwarder(self.backend, self.state, self.event_bus)
        try:
            if self.recognition_runtime is not None:
                self.recognition_runtime.start()
        except Exception:
            self.close(notify_backend=False)
            raise
        self._schedule_auto_stop()
        self.logger.info("Started companion session %s (section=%s)", self.session_id, self.state.section_id)

    def _schedule_auto_stop(self) -> None:
        scheduled_end = self.state.scheduled_end
        if scheduled_end is None:
            return
        initial_delay = max(0.0, (scheduled_end - self.state.now()).total_seconds())
        self.auto_stop_task = PeriodicTask(
            "companion-session-auto-stop",
            self.auto_stop_poll_interval,
            self.check_auto_stop,
            initial_delay=initial_delay,
        )
        self.auto_stop_task.start()

    def _cancel_auto_stop(self) -> None:
        if self.auto_stop_task is not None:
            self.auto_stop_task.cancel()

    def check_auto_stop(self, now: Optional[datetime] = None) -> bool:
        if not self.state.is_active:
            self._cancel_auto_stop()
            return False
        scheduled_end = self.state.scheduled_end
        if scheduled_end is None:
            return False
        now = now or self.state.now()
        if now < scheduled_end:
            return False
        return self.request_auto_stop("Scheduled end reached")

    def request_auto_stop(self, reason: str) -> bool:
        """Trigger auto-stop; only the first caller wins, later calls return False."""
        with self._auto_stop_lock:
            if self._auto_stop_triggered:
                return False
            self._auto_stop_triggered = True

        self._cancel_auto_stop()
        self.logger.info("Auto-stop triggered for session %s: %s", self.session_id, reason)
        if self.on_auto_stop is not None:
            self.on_auto_stop(self, reason)
        else:
            self.close()
        return True

    def close(self, notify_backend: bool = True) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        self.state.mark_stopped()
        if self.heartbeat_task is not None:
            self.heartbeat_task.cancel()
        self._cancel_auto_stop()
        if self.recognition_runtime is not None:
            self.recognition_runtime.close()
        if notify_backend:
            try:
                self.backend.notify_stop()
            except Exception as exc:
                self.logger.warning("Failed to notify backend of session stop: %s", exc)
        if self.forwarder is not None:
            self.forwarder.close()
        _close_backend(self.backend)
        self.logger.info("Stopped companion session %s", self.session_id)


@dataclass
class SessionRequest:
    session_id: str
    model_path: str
    cascade_path: str
    section_id: Optional[str] = None
    labels_path: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)
    missing_student_ids: List[str] = field(default_factory=list)
    auth_token: Optional[str] = None
    scheduled_start: Optional[str] = None
    scheduled_end: Optional[str] = None
    late_threshold_minutes: Optional[int] = None
    backend_base_url: Optional[str] = None


RuntimeFactory = Callable[[SessionState, RecognitionEventBus, AttendanceBackend], LiveRecognitionRuntime]
BackendFactory = Callable[[SessionState], AttendanceBackend]


def opencv_runtime_factory(settings: RecognitionSettings) -> RuntimeFactory:
    """Factory wiring the webcam, Haar detector and LBPH recognizer for a session.

    Detector and recognizer errors surface here, before anything is started.
    """

    def build(
        state: SessionState,
        event_bus: RecognitionEventBus,
        backend: AttendanceBackend,
    ) -> LiveRecognitionRuntime:
        detector = HaarFaceDetector(state.cascade_path)
        recognizer = LBPHRecognizer(state.model_path, state.labels_path)
        return LiveRecognitionRuntime(
            state,
            settings,
            event_bus,
            OpenCvFrameSource(settings.camera_index, settings.camera_fps),
            detector,
            recognizer,
            backend,
            ConfirmationChannel(settings.confirmation_timeout_seconds),
        )

    return build


class SessionManager:
    def __init__(
        self,
        settings: CompanionSettings,
        runtime_factory: RuntimeFactory,
        backend_factory: Optional[BackendFactory] = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        auto_stop_poll_interval: float = AUTO_STOP_POLL_INTERVAL_SECONDS,
    ):
        self.settings = settings
        self.runtime_factory = runtime_factory
        self.backend_factory = backend_factory or (lambda state: HttpAttendanceBackend(settings, state))
        self.heartbeat_interval = heartbeat_interval
        self.auto_stop_poll_interval = auto_stop_poll_interval
        self.sessions_dir = Path(settings.data_dir) / "sessions"
        self.handshake_file = Path(settings.data_dir) / HANDSHAKE_FILE_NAME
        # Serializes start/stop; never taken by timer threads.
        self._lifecycle_lock = threading.Lock()
        self._active_lock = threading.Lock()
        self._active: Optional[SessionRuntime] = None
        self.logger = setup_logger(self.__class__.__name__)
        self._handshake_lock = threading.Lock()
        self._handshake_token: Optional[str] = self._load_handshake_token()

    def active_session(self) -> Optional[SessionRuntime]:
        with self._active_lock:
            return self._active

    def _take_active(self, expected: Optional[SessionRuntime] = None) -> Optional[SessionRuntime]:
        with self._active_lock:
            current = self._active
            if expected is not None and current is not expected:
                return None
            self._active = None
            return current

    def perform_handshake(self, source: Optional[str] = None) -> Dict[str, Any]:
        """Issue a fresh companion token and persist it to ``handshake.json``.

        The previous token stops working immediately.
        """
        token = str(uuid.uuid4())
        with self._handshake_lock:
            self._handshake_token = token
            self._persist_handshake_token(token)
        session = self.active_session()
        if session is not None and session.state.is_active:
            message = f"Companion connected. Session {session.session_id} is active."
        else:
            message = "Companion ready."
        self.logger.info("Handshake from %s issued token %s", source or "unknown", mask_token(token))
        return {"status": "healthy", "token": token, "version": self.settings.version, "message": message}

    def verify_token(self, token: Optional[str]) -> None:
        with self._handshake_lock:
            expected = self._handshake_token
        if not expected:
            raise SessionError("Perform a handshake before using the companion", status_code=401)
        if not token or not token.strip() or not secrets.compare_digest(expected.encode(), token.strip().encode()):
            raise SessionError("Invalid companion token", status_code=401)

    def _load_handshake_token(self) -> Optional[str]:
        if not self.handshake_file.exists():
            return None
        try:
            payload = json.loads(self.handshake_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self.logger.warning("Unable to read handshake file %s: %s", self.handshake_file, exc)
            return None
        token = payload.get("token") if isinstance(payload, dict) else None
        if isinstance(token, str) and token.strip():
            return token.strip()
        return None

    def _persist_handshake_token(self, token: str) -> None:
        try:
            self.handshake_file.parent.mkdir(parents=True, exist_ok=True)
            self.handshake_file.write_text(json.dumps({"token": token}, indent=2), encoding="utf-8")
        except OSError as exc:
            self.logger.warning("Failed to persist handshake token: %s", exc)

    @staticmethod
    def validate(request: SessionRequest) -> None:
        if not request.session_id or not request.session_id.strip():
            raise SessionError("sessionId is required")
        if not SESSION_ID_PATTERN.fullmatch(request.session_id) or ".." in request.session_id:
            raise SessionError("sessionId must be a single file name without path separators")
        if not request.model_path or not request.model_path.strip():
            raise SessionError("modelPath is required")
        if not request.cascade_path or not request.cascade_path.strip():
            raise SessionError("cascadePath is required")

    def start_session(self, request: SessionRequest) -> Dict[str, Any]:
        self.validate(request)
        with self._lifecycle_lock:
            previous = self._take_active()
            if previous is not None:
                self.logger.info("Closing session %s before starting %s", previous.session_id, request.session_id)
                previous.close()

            state = SessionState(
                session_id=request.session_id,
                section_id=request.section_id,
                missing_student_ids=request.missing_student_ids,
                label_map=request.labels,
                access_token=request.auth_token,
                scheduled_start=request.scheduled_start,
                scheduled_end=request.scheduled_end,
                late_threshold_minutes=request.late_threshold_minutes,
                backend_base_url=request.backend_base_url or self.settings.backend_base_url,
            )
            model_path = Path(request.model_path).expanduser()
            labels_path = Path(request.labels_path).expanduser() if request.labels_path else None
            state.register_assets(model_path, Path(request.cascade_path).expanduser(), labels_path)
            self.logger.info(
                "Starting companion session %s (section=%s, backend=%s, token=%s)",
                state.session_id,
                state.section_id,
                state.resolve_backend_base_url(self.settings.backend_base_url),
                mask_token(state.access_token),
            )

            event_bus = RecognitionEventBus()
            backend = self.backend_factory(state)
            try:
                recognition_runtime = self.runtime_factory(state, event_bus, backend)
                session = SessionRuntime(
                    state,
                    recognition_runtime,
                    event_bus,
                    backend,
                    on_auto_stop=self.handle_auto_stop,
                    heartbeat_interval=self.heartbeat_interval,
                    auto_stop_poll_interval=self.auto_stop_poll_interval,
                )
                session.start()
            except Exception:
                state.mark_stopped()
                _close_backend(backend)
                raise
            with self._active_lock:
                self._active = session
            self._write_session_metadata(state)

        return {
            "status": "session-started",
            "sessionId": state.session_id,
            "sectionId": state.section_id,
            "modelPath": str(state.model_path),
            "cascadePath": str(state.cascade_path),
            "labelsPath": str(state.labels_path) if state.labels_path else None,
        }

    def stop_session(self) -> Dict[str, Any]:
        with self._lifecycle_lock:
            session = self._take_active()
            if session is None:
                return {"status": "idle", "sessionId": None, "message": "No active session to stop"}
            session.close()
        return {"status": "stopped", "sessionId": session.session_id, "message": "Session stopped"}

    def status(self) -> Dict[str, Any]:
        session = self.active_session()
        if session is None:
            return {"status": "idle", "active": False, "sessionId": None, "sectionId": None}
        return session.state.to_status()

    def health(self) -> Dict[str, Any]:
        session = self.active_session()
        active = session is not None and session.state.is_active
        return {
            "status": "ok",
            "version": self.settings.version,
            "sessionActive": active,
            "message": f"Session {session.session_id} running" if active else "Idle",
        }

    def handle_auto_stop(self, session: SessionRuntime, reason: str) -> None:
        if session is None:
            return
        self._take_active(expected=session)
        try:
            session.close()
        finally:
            suffix = f" ({reason})" if reason else ""
            self.logger.info("Auto-stopped companion session %s%s", session.session_id, suffix)

    def shutdown(self) -> None:
        with self._lifecycle_lock:
            session = self._take_active()
            if session is not None:
                session.close()

    def _write_session_metadata(self, state: SessionState) -> None:
        session_dir = self.sessions_dir / state.session_id
        metadata: Mapping[str, Any] = {
            **state.to_status(),
            "missingStudentIds": sorted(state.missing_student_ids),
            "labelMap": state.label_map,
        }
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
            (session_dir / "session.json").write_text(json.dumps(metadata, indent=2), encoding="utf-8")
        except OSError as exc:
            self.logger.warning("Failed to write session metadata for %s: %s", state.session_id, exc)
