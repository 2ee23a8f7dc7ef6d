from __future__ import annotations

import math
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional

if TYPE_CHECKING:
    from .tracking import FaceTrack


class FaceTrackState(str, Enum):
    DETECTED = "DETECTED"
    RECOGNIZING = "RECOGNIZING"
    AUTO_ACCEPTED = "AUTO_ACCEPTED"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    MANUAL_ACCEPTED = "MANUAL_ACCEPTED"
    MANUAL_REJECTED = "MANUAL_REJECTED"
    IGNORED = "IGNORED"
    COMPLETED = "COMPLETED"


_S = FaceTrackState

ALLOWED_TRANSITIONS: Dict[FaceTrackState, FrozenSet[FaceTrackState]] = {
    _S.DETECTED: frozenset({_S.RECOGNIZING}),
    _S.RECOGNIZING: frozenset({_S.AUTO_ACCEPTED, _S.MANUAL_REVIEW, _S.IGNORED}),
    _S.AUTO_ACCEPTED: frozenset({_S.COMPLETED, _S.IGNORED, _S.RECOGNIZING}),
    _S.MANUAL_REVIEW: frozenset(
        {_S.MANUAL_ACCEPTED, _S.MANUAL_REJECTED, _S.COMPLETED, _S.RECOGNIZING}
    ),
    _S.MANUAL_ACCEPTED: frozenset(
        {_S.MANUAL_REVIEW, _S.MANUAL_REJECTED, _S.COMPLETED, _S.RECOGNIZING}
    ),
    _S.MANUAL_REJECTED: frozenset({_S.RECOGNIZING}),
    _S.IGNORED: frozenset({_S.RECOGNIZING}),
    _S.COMPLETED: frozenset({_S.RECOGNIZING}),
}


class TrackedFace:
    """Decision state for one warmed-up track.

    Only the decision engine and the manual confirmation arbiter mutate it;
    every state change goes through :meth:`transition`.
    """

    def __init__(self, track: "FaceTrack"):
        self.track = track
        self.state = FaceTrackState.DETECTED
        self.student_id: Optional[str] = None
        self.student_name: Optional[str] = None
        self.last_distance: float = math.nan
        self.last_attempt: Optional[float] = None
        self.attempts = 0
        self.manual_prompt_attempts = 0
        self.manual_prompted = False
        self.submission_pending = False

    @property
    def track_id(self) -> str:
        return self.track.track_id

    def transition(self, new_state: FaceTrackState) -> None:
        if new_state == self.state:
            return
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise ValueError(
                f"Illegal face state transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def mark_attempt(self, now: float, distance: float) -> None:
        self.last_attempt = now
        self.last_distance = distance
        self.attempts += 1

    def increment_manual_prompt_attempts(self) -> int:
        self.manual_prompt_attempts += 1
        return self.manual_prompt_attempts

    def to_overlay(self) -> Dict[str, Any]:
        bounds = self.track.bounds
        return {
            "trackId": self.track_id,
            "state": self.state.value,
            "studentId": self.student_id,
            "studentName": self.student_name,
            "distance": self.last_distance if math.isfinite(self.last_distance) else None,
            "bounds": {
                "x": bounds.x,
                "y": bounds.y,
                "width": bounds.width,
                "height": bounds.height,
            },
        }

    def __repr__(self) -> str:
        return (
            f"TrackedFace(track_id={self.track_id!r}, state={self.state.value}, "
            f"student_id={self.student_id!r})"
        )
