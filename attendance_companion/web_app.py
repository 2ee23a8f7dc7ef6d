import json
from queue import Empty, Full, Queue
from typing import Dict, Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.responses import StreamingResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from .confirmation import ConfirmationChannel
from .events import RecognitionEvent, RecognitionEventBus
from .exceptions import AttendanceError, SessionError
from .logger import setup_logger
from .session import SessionManager, SessionRequest, SessionRuntime

SSE_QUEUE_SIZE = 64
SSE_KEEPALIVE_SECONDS = 15.0
TOKEN_HEADER = "X-Companion-Token"
logger = setup_logger("web_app")
companion_token_header = APIKeyHeader(name=TOKEN_HEADER, auto_error=False)


class StartSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    section_id: Optional[str] = Field(default=None, alias="sectionId")
    model_path: Optional[str] = Field(default=None, alias="modelPath")
    cascade_path: Optional[str] = Field(default=None, alias="cascadePath")
    labels_path: Optional[str] = Field(default=None, alias="labelsPath")
    labels: Dict[str, str] = Field(default_factory=dict)
    missing_student_ids: List[str] = Field(default_factory=list, alias="missingStudentIds")
    auth_token: Optional[str] = Field(default=None, alias="authToken")
    scheduled_start: Optional[str] = Field(default=None, alias="scheduledStart")
    scheduled_end: Optional[str] = Field(default=None, alias="scheduledEnd")
    late_threshold_minutes: Optional[int] = Field(default=None, alias="lateThresholdMinutes")
    backend_base_url: Optional[str] = Field(default=None, alias="backendBaseUrl")

    def to_session_request(self) -> SessionRequest:
        return SessionRequest(
            session_id=self.session_id or "",
            section_id=self.section_id,
            model_path=self.model_path or "",
            cascade_path=self.cascade_path or "",
            labels_path=self.labels_path,
            labels=dict(self.labels),
            missing_student_ids=list(self.missing_student_ids),
            auth_token=self.auth_token,
            scheduled_start=self.scheduled_start,
            scheduled_end=self.scheduled_end,
            late_threshold_minutes=self.late_threshold_minutes,
            backend_base_url=self.backend_base_url,
        )


class HandshakeRequest(BaseModel):
    source: Optional[str] = None


class RosterMarkBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reset_to_absent: bool = Field(default=False, alias="resetToAbsent")


class ConfirmationAnswerBody(BaseModel):
    accepted: bool


def put_latest(queue_obj: "Queue[RecognitionEvent]", item: RecognitionEvent) -> None:
    """Enqueue without blocking; a full queue drops its oldest item."""
    try:
        queue_obj.put_nowait(item)
        return
    except Full:
        pass

    try:
        queue_obj.get_nowait()
    except Empty:
        pass

    try:
        queue_obj.put_nowait(item)
    except Full:
        pass


def _format_sse(event: RecognitionEvent) -> str:
    return f"event: {event.type.value.lower()}\ndata: {json.dumps(event.to_dict())}\n\n"


def sse_event_stream(
    event_bus: RecognitionEventBus,
    replay: bool = True,
    max_events: Optional[int] = None,
    keepalive_seconds: float = SSE_KEEPALIVE_SECONDS,
) -> Iterator[str]:
    queue_obj: "Queue[RecognitionEvent]" = Queue(maxsize=SSE_QUEUE_SIZE)

    def listener(event: RecognitionEvent) -> None:
        put_latest(queue_obj, event)

    # Subscribe before the snapshot so nothing published in between is lost.
    event_bus.subscribe(listener)
    try:
        sent = 0
        # Holds the replayed objects so their ids cannot be reused by new events.
        replayed: Dict[int, RecognitionEvent] = {}
        if replay:
            for event in event_bus.snapshot():
                if max_events is not None and sent >= max_events:
                    return
                replayed[id(event)] = event
                yield _format_sse(event)
                sent += 1
        while max_events is None or sent < max_events:
            try:
                event = queue_obj.get(timeout=keepalive_seconds)
            except Empty:
                yield ": keep-alive\n\n"
                continue
            if replayed.get(id(event)) is event:
                del replayed[id(event)]
                continue
            yield _format_sse(event)
            sent += 1
    finally:
        event_bus.unsubscribe(listener)


def create_web_app(manager: SessionManager) -> FastAPI:
    app = FastAPI(title="Attendance Companion", version=manager.settings.version)

    def require_token(token: Optional[str] = Depends(companion_token_header)) -> str:
        if not token or not token.strip():
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Companion handshake token missing")
        try:
            manager.verify_token(token)
        except SessionError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        return token.strip()

    def require_session() -> SessionRuntime:
        session = manager.active_session()
        if session is None:
            raise HTTPException(status_code=404, detail="No active session")
        return session

    def require_channel() -> ConfirmationChannel:
        session = require_session()
        runtime = session.recognition_runtime
        channel = runtime.confirmation_ui if runtime is not None else None
        if not isinstance(channel, ConfirmationChannel):
            raise HTTPException(status_code=409, detail="Session does not accept remote confirmations")
        return channel

    authorized = [Depends(require_token)]

    @app.on_event("shutdown")
    def _shutdown() -> None:
        manager.shutdown()

    @app.get("/health")
    def health():
        return manager.health()

    @app.post("/handshake")
    def handshake(payload: Optional[HandshakeRequest] = None):
        return manager.perform_handshake(payload.source if payload is not None else None)

    @app.post("/session/start", dependencies=authorized)
    def start_session(payload: StartSessionRequest):
        try:
            return manager.start_session(payload.to_session_request())
        except SessionError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        except AttendanceError as exc:
            logger.warning("Session start failed: %s", exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.post("/session/stop", dependencies=authorized)
    def stop_session():
        return manager.stop_session()

    @app.get("/session")
    def session_status(token: Optional[str] = Depends(companion_token_header)):
        # A token is optional here, but a wrong one is still refused.
        if token and token.strip():
            require_token(token)
        return manager.status()

    @app.get("/overlay", dependencies=authorized)
    def overlay():
        session = require_session()
        runtime = session.recognition_runtime
        return {"faces": runtime.overlay() if runtime is not None else []}

    @app.get("/events", dependencies=authorized)
    def events():
        session = require_session()
        return {"events": [event.to_dict() for event in session.event_bus.snapshot()]}

    @app.get("/events/stream", dependencies=authorized)
    def events_stream(replay: bool = True, max_events: Optional[int] = None):
        session = require_session()
        return StreamingResponse(
            sse_event_stream(session.event_bus, replay=replay, max_events=max_events),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/roster", dependencies=authorized)
    def roster():
        session = require_session()
        runtime = session.recognition_runtime
        entries = runtime.roster_snapshot() if runtime is not None else []
        return {"roster": [entry.to_dict() for entry in entries]}

    @app.post("/roster/{student_id}", dependencies=authorized)
    def mark_roster(student_id: str, payload: Optional[RosterMarkBody] = None):
        session = require_session()
        runtime = session.recognition_runtime
        if runtime is None:
            raise HTTPException(status_code=409, detail="Recognition is not running")
        reset = payload.reset_to_absent if payload is not None else False
        future = runtime.mark_from_roster(student_id, reset_to_absent=reset)
        if future is None:
            raise HTTPException(status_code=400, detail="studentId is required")
        return {"ok": True, "studentId": student_id.strip(), "resetToAbsent": reset, "queued": True}

    @app.get("/confirmations", dependencies=authorized)
    def confirmations():
        channel = require_channel()
        return {"pending": [request.to_dict() for request in channel.pending()]}

    @app.post("/confirmations/{request_id}", dependencies=authorized)
    def answer_confirmation(request_id: str, payload: ConfirmationAnswerBody):
        channel = require_channel()
        if not channel.answer(request_id, payload.accepted):
            raise HTTPException(status_code=404, detail="Unknown or expired confirmation request")
        return {"ok": True, "requestId": request_id, "accepted": payload.accepted}

    return app
