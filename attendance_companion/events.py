"""In-memory recognition event bus.

Recent events are kept in a bounded ring buffer so late subscribers (live UI,
SSE relays, backend forwarder) can replay them. Listeners are called
synchronously on the publisher's thread; a failing listener is logged and
skipped without affecting the others or the publisher.
"""

from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, List, Optional

from .config import EVENT_HISTORY_SIZE
from .logger import setup_logger


class RecognitionEventType(str, Enum):
    CAMERA_STARTED = "CAMERA_STARTED"
    CAMERA_STOPPED = "CAMERA_STOPPED"
    FRAME_PROCESSED = "FRAME_PROCESSED"
    FACE_DETECTED = "FACE_DETECTED"
    TRACK_LOST = "TRACK_LOST"
    AUTO_ACCEPTED = "AUTO_ACCEPTED"
    AUTO_REJECTED = "AUTO_REJECTED"
    MANUAL_CONFIRMATION_REQUIRED = "MANUAL_CONFIRMATION_REQUIRED"
    MANUAL_CONFIRMED = "MANUAL_CONFIRMED"
    MANUAL_REJECTED = "MANUAL_REJECTED"
    ATTENDANCE_RECORDED = "ATTENDANCE_RECORDED"
    ATTENDANCE_SKIPPED = "ATTENDANCE_SKIPPED"
    ERROR = "ERROR"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RecognitionEvent:
    type: RecognitionEventType
    timestamp: datetime = field(default_factory=_utcnow)
    track_id: Optional[str] = None
    student_id: Optional[str] = None
    student_name: Optional[str] = None
    confidence: float = math.nan
    message: Optional[str] = None
    success: bool = False
    manual: bool = False

    @property
    def has_confidence(self) -> bool:
        return self.confidence is not None and math.isfinite(self.confidence)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value.lower(),
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "requiresManualConfirmation": self.manual,
        }
        if self.track_id:
            payload["trackId"] = self.track_id
        if self.student_id:
            payload["studentId"] = self.student_id
        if self.student_name:
            payload["studentName"] = self.student_name
        if self.has_confidence:
            payload["confidence"] = self.confidence
        if self.message is not None:
            payload["message"] = self.message
        return payload


Listener = Callable[[RecognitionEvent], None]


class RecognitionEventBus:
    def __init__(self, max_history: int = EVENT_HISTORY_SIZE):
        self.max_history = max(1, int(max_history))
        self._history: Deque[RecognitionEvent] = deque(maxlen=self.max_history)
        self._history_lock = threading.Lock()
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def publish(self, event: Optional[RecognitionEvent]) -> None:
        if event is None:
            return
        with self._history_lock:
            self._history.append(event)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                self.logger.exception(
                    "Event listener %r failed on %s", listener, event.type.value
                )

    def snapshot(self) -> List[RecognitionEvent]:
        with self._history_lock:
            return list(self._history)

    def subscribe(self, listener: Optional[Listener]) -> None:
        if listener is None:
            return
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Optional[Listener]) -> None:
        if listener is None:
            return
        with self._listeners_lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def listener_count(self) -> int:
        with self._listeners_lock:
            return len(self._listeners)
