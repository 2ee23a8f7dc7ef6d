from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from .config import DEFAULT_LATE_THRESHOLD_MINUTES, MAX_LATE_THRESHOLD_MINUTES, sanitize_base_url

Instant = Union[str, datetime, None]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_instant(value: Instant) -> Optional[datetime]:
    """Parse an ISO-8601 instant (``Z`` suffix accepted); invalid or blank -> None.

    Naive datetimes are taken as UTC so every instant compares safely.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sanitize_late_threshold(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_LATE_THRESHOLD_MINUTES
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return DEFAULT_LATE_THRESHOLD_MINUTES
    return min(max(0, minutes), MAX_LATE_THRESHOLD_MINUTES)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


class SessionState:
    """Per-session configuration and liveness.

    Identifiers, schedule and roster hints are fixed at construction; only
    the active flag, the heartbeat and the registered asset paths change.
    """

    def __init__(
        self,
        session_id: str,
        section_id: Optional[str] = None,
        missing_student_ids: Optional[Iterable[str]] = None,
        label_map: Optional[Mapping[str, str]] = None,
        access_token: Optional[str] = None,
        scheduled_start: Instant = None,
        scheduled_end: Instant = None,
        late_threshold_minutes: Optional[int] = None,
        backend_base_url: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not session_id or not str(session_id).strip():
            raise ValueError("session_id is required")
        self._session_id = str(session_id).strip()
        self._section_id = section_id.strip() if section_id and section_id.strip() else None
        self._missing_student_ids = frozenset(
            sid.strip() for sid in (missing_student_ids or []) if sid and sid.strip()
        )
        self._label_map: Dict[str, str] = dict(label_map or {})
        self._access_token = access_token.strip() if access_token and access_token.strip() else None
        self._scheduled_start = parse_instant(scheduled_start)
        self._scheduled_end = parse_instant(scheduled_end)
        self._late_threshold_minutes = sanitize_late_threshold(late_threshold_minutes)
        self._backend_base_url = sanitize_base_url(backend_base_url)
        self._clock = clock

        self._active = True
        self._active_lock = threading.Lock()
        self.started_at = clock()
        self.last_heartbeat = self.started_at
        self.model_path: Optional[Path] = None
        self.cascade_path: Optional[Path] = None
        self.labels_path: Optional[Path] = None

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def section_id(self) -> Optional[str]:
        return self._section_id

    @property
    def missing_student_ids(self) -> frozenset:
        return self._missing_student_ids

    @property
    def label_map(self) -> Dict[str, str]:
        return dict(self._label_map)

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def scheduled_start(self) -> Optional[datetime]:
        return self._scheduled_start

    @property
    def scheduled_end(self) -> Optional[datetime]:
        return self._scheduled_end

    @property
    def late_threshold_minutes(self) -> int:
        return self._late_threshold_minutes

    @property
    def backend_base_url(self) -> Optional[str]:
        return self._backend_base_url

    @property
    def is_active(self) -> bool:
        return self._active

    def now(self) -> datetime:
        return self._clock()

    def touch(self) -> None:
        self.last_heartbeat = self._clock()

    def mark_stopped(self) -> bool:
        with self._active_lock:
            if not self._active:
                return False
            self._active = False
        self.touch()
        return True

    def register_assets(
        self,
        model_path: Optional[Path],
        cascade_path: Optional[Path],
        labels_path: Optional[Path] = None,
    ) -> None:
        self.model_path = model_path
        self.cascade_path = cascade_path
        self.labels_path = labels_path
        self.touch()

    def resolve_backend_base_url(self, fallback: Optional[str]) -> Optional[str]:
        if self._backend_base_url:
            return self._backend_base_url
        return sanitize_base_url(fallback)

    def to_status(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "active": self.is_active,
            "sessionId": self._session_id,
            "sectionId": self._section_id,
            "modelPath": str(self.model_path.resolve()) if self.model_path else None,
            "cascadePath": str(self.cascade_path.resolve()) if self.cascade_path else None,
            "labelsPath": str(self.labels_path.resolve()) if self.labels_path else None,
            "startedAt": _iso(self.started_at),
            "lastHeartbeat": _iso(self.last_heartbeat),
            "scheduledStart": _iso(self._scheduled_start),
            "scheduledEnd": _iso(self._scheduled_end),
            "lateThresholdMinutes": self._late_threshold_minutes,
        }
