import os
import tempfile

os.environ.setdefault("SMARTATTENDANCE_COMPANION_LOG_DIR", tempfile.mkdtemp(prefix="companion-logs-"))

import threading
from datetime import datetime, timezone

import numpy as np
import pytest

from attendance_companion.config import RecognitionSettings
from attendance_companion.confirmation import ManualConfirmationArbiter
from attendance_companion.decision import RecognitionDecisionEngine
from attendance_companion.events import RecognitionEventBus
from attendance_companion.exceptions import BackendError
from attendance_companion.roster import AttendanceLedger
from attendance_companion.session_state import SessionState
from attendance_companion.submission import AttendanceSubmissionPipeline
from attendance_companion.tracked_face import TrackedFace
from attendance_companion.tracking import BoundingBox, FaceTrack
from attendance_companion.vision import Prediction

START = datetime(2024, 9, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock; works for monotonic floats and datetimes alike."""

    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value

    def advance(self, delta):
        self.value = self.value + delta


class FakeBackend:
    def __init__(self, roster=None, fail_submissions=0):
        self.roster = list(roster or [])
        self.roster_error = None
        self.fail_submissions = fail_submissions
        self.stop_error = None
        self.submissions = []
        self.forwarded = []
        self.calls = []
        self._lock = threading.Lock()

    def submit(self, payload):
        with self._lock:
            self.calls.append("submit")
            self.submissions.append(dict(payload))
            if self.fail_submissions > 0:
                self.fail_submissions -= 1
                raise BackendError("Attendance API rejected request", status_code=503)
        return {
            "studentId": payload["studentId"],
            "status": payload["status"],
            "markingMethod": payload["markingMethod"],
        }

    def fetch_roster(self):
        self.calls.append("fetch_roster")
        if self.roster_error is not None:
            raise self.roster_error
        return list(self.roster)

    def notify_stop(self):
        self.calls.append("notify_stop")
        if self.stop_error is not None:
            raise self.stop_error

    def forward_event(self, payload):
        with self._lock:
            self.forwarded.append(payload)


class FakeRecognizer:
    """Returns scripted predictions; an exception in the script is raised.

    The last scripted item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script) or [None]
        self.calls = 0
        self._lock = threading.Lock()

    def recognize(self, face_crop):
        with self._lock:
            self.calls += 1
            item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item


class ScriptedConfirmation:
    def __init__(self, answers=None, on_prompt=None):
        self.answers = list(answers or [])
        self.on_prompt = on_prompt
        self.prompts = []

    def confirm(self, name, track_id=None):
        self.prompts.append((name, track_id))
        if self.on_prompt is not None:
            self.on_prompt(name, track_id)
        if not self.answers:
            return False
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeDetector:
    def __init__(self, boxes=None):
        self.boxes = boxes if callable(boxes) else list(boxes or [])

    def detect(self, frame):
        if callable(self.boxes):
            return self.boxes()
        return list(self.boxes)


class FakeFrameSource:
    def __init__(self, frames=None, open_error=None):
        self.frames = list(frames or [])
        self.open_error = open_error
        self.opened = False
        self.closed = False

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True

    def next_frame(self):
        if self.frames:
            return self.frames.pop(0)
        return None

    def close(self):
        self.closed = True


def event_types(bus):
    return [event.type for event in bus.snapshot()]


def messages(bus):
    return [event.message for event in bus.snapshot()]


def make_tracked_face(bounds=None, frames=10, motion=100.0):
    track = FaceTrack(bounds or BoundingBox(100, 100, 200, 200), 0.0)
    track.seen_frames = frames
    track.motion_accum = motion
    return TrackedFace(track)


def prediction(student_id, distance):
    return Prediction(student_id=student_id, distance=distance)


class Harness:
    def __init__(
        self,
        recognizer=None,
        answers=None,
        settings=None,
        backend=None,
        label_map=None,
        missing_student_ids=(),
        scheduled_start=None,
        now=START,
    ):
        self.settings = settings or RecognitionSettings()
        self.bus = RecognitionEventBus()
        self.ledger = AttendanceLedger()
        self.backend = backend or FakeBackend()
        self.recognizer = recognizer or FakeRecognizer(prediction("s1", 10.0))
        self.ui = ScriptedConfirmation(answers)
        self.wall_clock = FakeClock(now)
        self.state = SessionState(
            "sess-1",
            section_id="sec-1",
            missing_student_ids=missing_student_ids,
            label_map=label_map or {"s1": "Ada Lovelace", "s2": "Alan Turing"},
            scheduled_start=scheduled_start,
            clock=self.wall_clock,
        )
        self.pipeline = AttendanceSubmissionPipeline(self.state, self.backend, self.ledger, self.bus)
        self.arbiter = ManualConfirmationArbiter(
            self.ui, self.ledger, self.pipeline, self.bus, self.settings.max_manual_prompts
        )
        self.engine = RecognitionDecisionEngine(
            self.settings,
            self.recognizer,
            self.ledger,
            self.pipeline,
            self.arbiter,
            self.bus,
            label_map=self.state.label_map,
            missing_student_ids=self.state.missing_student_ids,
            clock=FakeClock(100.0),
        )


@pytest.fixture
def frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)


@pytest.fixture
def sharp_frame():
    rng = np.random.default_rng(7)
    return rng.integers(0, 256, size=(480, 640, 3), dtype=np.uint8)


@pytest.fixture
def make_harness():
    created = []

    def build(**kwargs):
        harness = Harness(**kwargs)
        created.append(harness)
        return harness

    yield build
    for harness in created:
        harness.pipeline.shutdown(wait=True)
