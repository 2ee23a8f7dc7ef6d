from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from .backend import AttendanceBackend
from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .logger import setup_logger
from .session_state import SessionState

FORWARDED_TYPES = frozenset(
    {
        RecognitionEventType.ATTENDANCE_RECORDED,
        RecognitionEventType.MANUAL_CONFIRMED,
        RecognitionEventType.MANUAL_REJECTED,
        RecognitionEventType.AUTO_REJECTED,
        RecognitionEventType.ATTENDANCE_SKIPPED,
        RecognitionEventType.ERROR,
    }
)


class BackendEventForwarder:
    """Relays dashboard-relevant recognition events to the backend.

    Subscribes on construction. Posting happens on its own worker thread so a
    slow backend never delays the publisher.
    """

    def __init__(self, backend: AttendanceBackend, state: SessionState, event_bus: RecognitionEventBus):
        self.backend = backend
        self.state = state
        self.event_bus = event_bus
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="companion-event-forwarder")
        self._closed = False
        self.logger = setup_logger(self.__class__.__name__)
        event_bus.subscribe(self.accept)

    def should_forward(self, event: RecognitionEvent) -> bool:
        if event is None or self._closed:
            return False
        if not self.state.section_id:
            return False
        return event.type in FORWARDED_TYPES

    def accept(self, event: RecognitionEvent) -> None:
        if not self.should_forward(event):
            return
        try:
            self._executor.submit(self._forward, event)
        except RuntimeError:
            # Executor already shut down.
            return

    def _forward(self, event: RecognitionEvent) -> None:
        try:
            self.backend.forward_event(event.to_dict())
        except Exception as exc:
            self.logger.debug("Failed to forward %s event: %s", event.type.value, exc)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.event_bus.unsubscribe(self.accept)
        self._executor.shutdown(wait=False, cancel_futures=False)
