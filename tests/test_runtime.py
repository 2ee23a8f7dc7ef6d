import threading

import pytest

from attendance_companion.config import RecognitionSettings
from attendance_companion.confirmation import ConfirmationChannel
from attendance_companion.events import RecognitionEvent, RecognitionEventBus
from attendance_companion.events import RecognitionEventType as E
from attendance_companion.exceptions import CameraError
from attendance_companion.forwarder import BackendEventForwarder
from attendance_companion.runtime import LiveRecognitionRuntime
from attendance_companion.session_state import SessionState
from attendance_companion.tracking import BoundingBox

from conftest import (
    FakeBackend,
    FakeClock,
    FakeDetector,
    FakeFrameSource,
    FakeRecognizer,
    ScriptedConfirmation,
    event_types,
    prediction,
)


def _runtime(detector=None, recognizer=None, frame_source=None, confirmation_ui=None, backend=None):
    state = SessionState("sess-1", section_id="sec-1", label_map={"s1": "Ada Lovelace"})
    runtime = LiveRecognitionRuntime(
        state,
        RecognitionSettings(),
        RecognitionEventBus(),
        frame_source or FakeFrameSource(),
        detector or FakeDetector(),
        recognizer or FakeRecognizer(prediction("s1", 10.0)),
        backend or FakeBackend(),
        confirmation_ui or ScriptedConfirmation(),
        clock=FakeClock(100.0),
    )
    return runtime


def _moving_detector():
    position = {"x": 100}

    def boxes():
        box = BoundingBox(position["x"], 100, 220, 220)
        position["x"] += 15
        return [box]

    return FakeDetector(boxes)


def test_blurry_frame_is_rejected(frame):
    runtime = _runtime()
    try:
        assert runtime.process_frame(frame) == []
        event = runtime.event_bus.snapshot()[-1]
        assert event.type is E.FRAME_PROCESSED
        assert event.message == "Frame rejected: too blurry"
        assert event.success is False
    finally:
        runtime.close()


def test_moving_face_is_warmed_up_then_recorded(sharp_frame):
    runtime = _runtime(detector=_moving_detector())
    try:
        futures = []
        for _ in range(6):
            futures.extend(runtime.process_frame(sharp_frame))

        assert len(futures) == 1
        record = futures[0].result(timeout=5)
        assert record.student_id == "s1"
        types = event_types(runtime.event_bus)
        assert types.count(E.FACE_DETECTED) == 1
        assert types.index(E.FACE_DETECTED) < types.index(E.AUTO_ACCEPTED) < types.index(E.ATTENDANCE_RECORDED)
        overlay = runtime.overlay()
        assert len(overlay) == 1
        assert overlay[0]["studentId"] == "s1"
    finally:
        runtime.close()


def test_implausible_boxes_are_filtered(sharp_frame):
    runtime = _runtime(detector=FakeDetector([BoundingBox(10, 10, 60, 60)]))
    try:
        for _ in range(8):
            runtime.process_frame(sharp_frame)
        assert runtime.track_group.tracks() == []
        assert runtime.overlay() == []
    finally:
        runtime.close()


def test_start_loads_roster_and_close_is_idempotent():
    source = FakeFrameSource()
    backend = FakeBackend(roster=[{"studentId": "s1", "status": "present"}])
    runtime = _runtime(frame_source=source, backend=backend)

    runtime.start()
    assert runtime.is_running
    assert runtime.pipeline.drain(timeout=5)
    assert runtime.ledger.is_submitted("s1")

    runtime.close()
    runtime.close()

    assert source.opened and source.closed
    assert not runtime.is_running
    types = event_types(runtime.event_bus)
    assert types[0] is E.CAMERA_STARTED
    assert types.count(E.CAMERA_STOPPED) == 1


def test_camera_failure_aborts_start():
    source = FakeFrameSource(open_error=CameraError("Unable to open webcam index 0"))
    runtime = _runtime(frame_source=source)

    with pytest.raises(CameraError):
        runtime.start()

    assert source.closed
    assert not runtime.is_running
    assert runtime.worker is None
    assert E.CAMERA_STARTED not in event_types(runtime.event_bus)
    runtime.close()


def test_close_unblocks_a_pending_confirmation():
    channel = ConfirmationChannel()
    runtime = _runtime(confirmation_ui=channel)
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault("answer", channel.confirm("Ada")))
    thread.start()
    while not channel.pending():
        thread.join(timeout=0.01)

    runtime.close()
    thread.join(timeout=2)

    assert result["answer"] is False
    assert channel.confirm("Ada") is False


def test_forwarder_relays_dashboard_events_only():
    backend = FakeBackend()
    bus = RecognitionEventBus()
    forwarder = BackendEventForwarder(backend, SessionState("sess-1", section_id="sec-1"), bus)

    bus.publish(RecognitionEvent(type=E.ATTENDANCE_RECORDED, student_id="s1", success=True))
    bus.publish(RecognitionEvent(type=E.FACE_DETECTED))
    bus.publish(RecognitionEvent(type=E.ERROR, message="boom"))
    forwarder._executor.submit(lambda: None).result(timeout=5)
    forwarder.close()
    bus.publish(RecognitionEvent(type=E.ERROR, message="after close"))

    assert [payload["type"] for payload in backend.forwarded] == ["attendance_recorded", "error"]
    assert bus.listener_count() == 0


def test_forwarder_needs_a_section():
    backend = FakeBackend()
    bus = RecognitionEventBus()
    forwarder = BackendEventForwarder(backend, SessionState("sess-1"), bus)
    assert not forwarder.should_forward(RecognitionEvent(type=E.ATTENDANCE_RECORDED))
    forwarder.close()


def test_prompt_limit_survives_a_dropped_track(sharp_frame):
    clock = FakeClock(100.0)
    frames = {"count": 0}

    def flickering_boxes():
        frames["count"] += 1
        if frames["count"] == 12:
            return []
        return [BoundingBox(100 + 15 * (frames["count"] % 2), 100, 220, 220)]

    ui = ScriptedConfirmation()
    state = SessionState("sess-1", section_id="sec-1", label_map={"s1": "Ada Lovelace"})
    runtime = LiveRecognitionRuntime(
        state,
        RecognitionSettings(),
        RecognitionEventBus(),
        FakeFrameSource(),
        FakeDetector(flickering_boxes),
        FakeRecognizer(prediction("s1", 45.0)),
        FakeBackend(),
        ui,
        clock=clock,
    )
    try:
        for _ in range(30):
            runtime.process_frame(sharp_frame)
            clock.advance(2.0)

        types = event_types(runtime.event_bus)
        assert types.count(E.FACE_DETECTED) == 2
        assert E.TRACK_LOST in types
        assert len(ui.prompts) == 3
        assert runtime.ledger.manual_prompt_count("s1") == 3
        assert runtime.event_bus.snapshot()[-1].message == "Manual confirmation limit reached"
    finally:
        runtime.close()
