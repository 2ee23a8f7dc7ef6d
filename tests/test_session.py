import json
import threading
from datetime import timedelta

import pytest

from attendance_companion.config import CompanionSettings
from attendance_companion.events import RecognitionEventBus
from attendance_companion.exceptions import CameraError, RecognizerError, SessionError
from attendance_companion.session import PeriodicTask, SessionManager, SessionRequest, SessionRuntime
from attendance_companion.session_state import SessionState, utcnow

from conftest import START, FakeBackend, FakeClock


class FakeRecognitionRuntime:
    def __init__(self, state, calls, start_error=None):
        self.state = state
        self.calls = calls
        self.start_error = start_error
        self.active_at_close = None

    def start(self):
        self.calls.append("runtime.start")
        if self.start_error is not None:
            raise self.start_error

    def close(self):
        self.active_at_close = self.state.is_active
        self.calls.append("runtime.close")


def _session(scheduled_end=None, clock=None, on_auto_stop=None, start_error=None):
    calls = []
    state = SessionState(
        "sess-1",
        section_id="sec-1",
        scheduled_end=scheduled_end,
        clock=clock or FakeClock(START),
    )
    backend = FakeBackend()
    backend.calls = calls
    runtime = FakeRecognitionRuntime(state, calls, start_error)
    session = SessionRuntime(
        state,
        runtime,
        RecognitionEventBus(),
        backend,
        on_auto_stop=on_auto_stop,
        heartbeat_interval=0.05,
    )
    return session, runtime, backend, calls


def test_close_tears_down_in_order():
    session, runtime, backend, calls = _session()
    session.start()
    assert session.event_bus.listener_count() == 1

    session.close()

    assert calls == ["runtime.start", "runtime.close", "notify_stop"]
    assert runtime.active_at_close is False
    assert session.heartbeat_task.cancelled
    assert session.event_bus.listener_count() == 0
    assert not session.state.is_active


def test_close_is_idempotent():
    session, _, _, calls = _session()
    session.start()
    session.close()
    session.close()
    assert calls.count("notify_stop") == 1
    assert calls.count("runtime.close") == 1


def test_close_without_backend_notification():
    session, _, _, calls = _session()
    session.start()
    session.close(notify_backend=False)
    assert "notify_stop" not in calls


def test_stop_notification_failure_does_not_abort_close():
    session, _, backend, calls = _session()
    backend.stop_error = RuntimeError("backend down")
    session.start()
    session.close()
    assert session.closed
    assert session.event_bus.listener_count() == 0


def test_failed_recognition_start_closes_session():
    session, _, _, calls = _session(start_error=CameraError("no webcam"))
    with pytest.raises(CameraError):
        session.start()
    assert session.closed
    assert "notify_stop" not in calls
    assert session.event_bus.listener_count() == 0


def test_auto_stop_fires_exactly_once_under_overlapping_checks():
    fired = []
    session, _, _, _ = _session(
        scheduled_end=START,
        clock=FakeClock(START + timedelta(minutes=1)),
        on_auto_stop=lambda runtime, reason: fired.append(reason),
    )
    barrier = threading.Barrier(8)
    results = []

    def check():
        barrier.wait()
        results.append(session.check_auto_stop())

    threads = [threading.Thread(target=check) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert fired == ["Scheduled end reached"]
    assert results.count(True) == 1
    assert session.auto_stop_triggered


def test_auto_stop_waits_for_scheduled_end():
    clock = FakeClock(START - timedelta(minutes=5))
    fired = []
    session, _, _, _ = _session(scheduled_end=START, clock=clock, on_auto_stop=lambda r, reason: fired.append(r))

    assert session.check_auto_stop() is False
    clock.advance(timedelta(minutes=5))
    assert session.check_auto_stop() is True
    assert fired == [session]


def test_auto_stop_ignored_once_inactive():
    fired = []
    session, _, _, _ = _session(
        scheduled_end=START,
        clock=FakeClock(START + timedelta(minutes=1)),
        on_auto_stop=lambda r, reason: fired.append(reason),
    )
    session.state.mark_stopped()
    assert session.check_auto_stop() is False
    assert fired == []


def test_auto_stop_without_handler_closes_session():
    session, _, _, calls = _session(scheduled_end=START, clock=FakeClock(START + timedelta(seconds=1)))
    assert session.request_auto_stop("Scheduled end reached")
    assert not session.request_auto_stop("Scheduled end reached")
    assert session.closed
    assert calls[-1] == "notify_stop"


def test_auto_stop_timer_fires_when_end_has_passed():
    fired = threading.Event()

    def on_auto_stop(runtime, reason):
        fired.set()
        runtime.close()

    calls = []
    state = SessionState("sess-1", scheduled_end=utcnow() - timedelta(seconds=1))
    backend = FakeBackend()
    backend.calls = calls
    session = SessionRuntime(
        state,
        FakeRecognitionRuntime(state, calls),
        RecognitionEventBus(),
        backend,
        on_auto_stop=on_auto_stop,
        heartbeat_interval=0.05,
    )
    session.start()

    assert fired.wait(timeout=3)
    assert session.closed
    assert calls.count("runtime.close") == 1


def test_periodic_task_runs_until_cancelled():
    ticks = threading.Semaphore(0)
    task = PeriodicTask("test-periodic", 0.01, ticks.release)
    task.start()
    for _ in range(3):
        assert ticks.acquire(timeout=2)
    task.cancel()
    assert task.cancelled
    assert not task.worker.is_alive()


def test_periodic_task_can_cancel_itself():
    done = threading.Event()
    holder = {}

    def fn():
        holder["task"].cancel()
        done.set()

    task = PeriodicTask("test-self-cancel", 0.01, fn)
    holder["task"] = task
    task.start()
    assert done.wait(timeout=2)
    task.worker.join(timeout=2)
    assert not task.worker.is_alive()


def _manager(tmp_path, calls=None, runtime_error=None, factory_error=None):
    calls = calls if calls is not None else []
    runtimes = []
    backends = []

    def runtime_factory(state, event_bus, backend):
        if factory_error is not None:
            raise factory_error
        runtime = FakeRecognitionRuntime(state, calls, runtime_error)
        runtimes.append(runtime)
        return runtime

    def backend_factory(state):
        backend = FakeBackend()
        backend.calls = calls
        backends.append(backend)
        return backend

    manager = SessionManager(
        CompanionSettings(data_dir=tmp_path, version="1.2.3"),
        runtime_factory,
        backend_factory=backend_factory,
        heartbeat_interval=0.05,
    )
    return manager, runtimes, backends


def _request(session_id="sess-1", **kwargs):
    return SessionRequest(
        session_id=session_id,
        section_id="sec-1",
        model_path="models/lbph.yml",
        cascade_path="models/haarcascade_frontalface_default.xml",
        **kwargs,
    )


def test_manager_start_status_and_stop(tmp_path):
    manager, runtimes, _ = _manager(tmp_path)

    started = manager.start_session(_request(labels={"s1": "Ada"}, missing_student_ids=["s9"]))
    assert started["status"] == "session-started"
    assert started["sessionId"] == "sess-1"

    status = manager.status()
    assert status["active"] is True
    assert status["sessionId"] == "sess-1"
    assert manager.health()["sessionActive"] is True
    assert manager.health()["version"] == "1.2.3"

    metadata = json.loads((tmp_path / "sessions" / "sess-1" / "session.json").read_text(encoding="utf-8"))
    assert metadata["labelMap"] == {"s1": "Ada"}
    assert metadata["missingStudentIds"] == ["s9"]

    assert manager.stop_session()["status"] == "stopped"
    assert manager.status() == {"status": "idle", "active": False, "sessionId": None, "sectionId": None}
    assert manager.stop_session()["status"] == "idle"
    assert runtimes[0].calls.count("runtime.close") == 1


@pytest.mark.parametrize(
    "field,message",
    [("session_id", "sessionId is required"), ("model_path", "modelPath is required"), ("cascade_path", "cascadePath is required")],
)
def test_manager_rejects_incomplete_requests(tmp_path, field, message):
    manager, runtimes, _ = _manager(tmp_path)
    request = _request()
    setattr(request, field, "  ")

    with pytest.raises(SessionError) as excinfo:
        manager.start_session(request)
    assert str(excinfo.value) == message
    assert excinfo.value.status_code == 400
    assert runtimes == []


def test_starting_a_new_session_closes_the_previous_one(tmp_path):
    calls = []
    manager, runtimes, _ = _manager(tmp_path, calls=calls)
    manager.start_session(_request("sess-1"))
    first = manager.active_session()

    manager.start_session(_request("sess-2"))

    assert first.closed
    assert manager.active_session().session_id == "sess-2"
    assert calls == ["runtime.start", "runtime.close", "notify_stop", "runtime.start"]
    manager.shutdown()
    assert manager.active_session() is None


def test_auto_stop_clears_only_the_matching_session(tmp_path):
    manager, _, _ = _manager(tmp_path)
    manager.start_session(_request("sess-1"))
    old = manager.active_session()
    manager.start_session(_request("sess-2"))
    current = manager.active_session()

    manager.handle_auto_stop(old, "Scheduled end reached")
    assert manager.active_session() is current

    assert current.request_auto_stop("Scheduled end reached")
    assert manager.active_session() is None
    assert current.closed


def test_failed_start_leaves_manager_idle(tmp_path):
    manager, _, _ = _manager(tmp_path, runtime_error=CameraError("no webcam"))
    with pytest.raises(CameraError):
        manager.start_session(_request())
    assert manager.active_session() is None
    assert manager.status()["active"] is False


def test_runtime_factory_error_propagates(tmp_path):
    manager, _, _ = _manager(tmp_path, factory_error=RecognizerError("cv2.face is unavailable"))
    with pytest.raises(RecognizerError):
        manager.start_session(_request())
    assert manager.active_session() is None


@pytest.mark.parametrize("session_id", ["../../escaped", "a/b", "a\\b", "..", ".hidden", "sess 1"])
def test_manager_rejects_session_ids_that_are_not_plain_names(tmp_path, session_id):
    data_dir = tmp_path / "data"
    manager, runtimes, _ = _manager(data_dir)

    with pytest.raises(SessionError) as excinfo:
        manager.start_session(_request(session_id))
    assert excinfo.value.status_code == 400
    assert runtimes == []
    assert not (tmp_path / "escaped").exists()
    assert not (data_dir / "sessions").exists()


def test_handshake_issues_and_persists_a_token(tmp_path):
    manager, _, _ = _manager(tmp_path)
    with pytest.raises(SessionError) as excinfo:
        manager.verify_token("anything")
    assert excinfo.value.status_code == 401

    first = manager.perform_handshake("web-dashboard")
    assert first["status"] == "healthy"
    assert first["version"] == "1.2.3"
    assert first["message"] == "Companion ready."
    manager.verify_token(first["token"])
    assert json.loads((tmp_path / "handshake.json").read_text(encoding="utf-8")) == {"token": first["token"]}

    second = manager.perform_handshake()
    manager.verify_token(second["token"])
    with pytest.raises(SessionError) as excinfo:
        manager.verify_token(first["token"])
    assert str(excinfo.value) == "Invalid companion token"
    with pytest.raises(SessionError):
        manager.verify_token(None)


def test_handshake_token_survives_a_restart(tmp_path):
    manager, _, _ = _manager(tmp_path)
    token = manager.perform_handshake()["token"]

    restarted, _, _ = _manager(tmp_path)
    restarted.verify_token(token)


def test_handshake_reports_the_active_session(tmp_path):
    manager, _, _ = _manager(tmp_path)
    manager.start_session(_request())
    try:
        assert manager.perform_handshake()["message"] == "Companion connected. Session sess-1 is active."
    finally:
        manager.shutdown()
