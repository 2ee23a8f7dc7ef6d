"""Per-frame face tracking and promotion of warmed-up tracks.

``FaceTrackGroup`` associates raw detections across frames by greedy IoU
matching. ``TrackReconciler`` turns the tracks refreshed in the current frame
into ``TrackedFace`` decision objects once they survive warm-up, and drops a
face the moment its track is not refreshed.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .logger import setup_logger
from .tracked_face import TrackedFace

SMOOTHING_ALPHA = 0.35
DEFAULT_IOU_THRESHOLD = 0.3
DEFAULT_MAX_AGE_SECONDS = 4.0


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    def iou(self, other: Optional["BoundingBox"]) -> float:
        if other is None:
            return 0.0
        x1 = max(self.x, other.x)
        y1 = max(self.y, other.y)
        x2 = min(self.x + self.width, other.x + other.width)
        y2 = min(self.y + self.height, other.y + other.height)
        inter = float(max(0, x2 - x1) * max(0, y2 - y1))
        union = float(self.area + other.area) - inter
        if union <= 0.0:
            return 0.0
        return inter / union

    def clamp(self, frame_width: int, frame_height: int) -> Optional["BoundingBox"]:
        x = max(0, self.x)
        y = max(0, self.y)
        w = min(self.width, frame_width - x)
        h = min(self.height, frame_height - y)
        if w <= 0 or h <= 0:
            return None
        return BoundingBox(x, y, w, h)


class FaceTrack:
    def __init__(self, bounds: BoundingBox, now: float):
        self.track_id = uuid.uuid4().hex
        self.bounds = bounds
        self.match_bounds = bounds
        self.seen_frames = 1
        self.motion_accum = 0.0
        self.last_seen = now
        self.updated_this_frame = True

    def update(self, detection: BoundingBox, now: float) -> None:
        cx0, cy0 = self.match_bounds.center
        cx1, cy1 = detection.center
        self.motion_accum += math.hypot(cx1 - cx0, cy1 - cy0)

        a = SMOOTHING_ALPHA
        prev = self.bounds
        self.bounds = BoundingBox(
            int(round(a * detection.x + (1 - a) * prev.x)),
            int(round(a * detection.y + (1 - a) * prev.y)),
            max(1, int(round(a * detection.width + (1 - a) * prev.width))),
            max(1, int(round(a * detection.height + (1 - a) * prev.height))),
        )
        self.match_bounds = detection
        self.seen_frames += 1
        self.last_seen = now
        self.updated_this_frame = True

    def is_stale(self, now: float, max_age_seconds: float) -> bool:
        return now - self.last_seen > max_age_seconds


class FaceTrackGroup:
    def __init__(
        self,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        iou_threshold: float = DEFAULT_IOU_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_age_seconds = max_age_seconds
        self.iou_threshold = iou_threshold
        self._clock = clock
        self._tracks: List[FaceTrack] = []

    def update(self, detections: Iterable[BoundingBox]) -> List[FaceTrack]:
        now = self._clock()
        for track in self._tracks:
            track.updated_this_frame = False

        matched: set[str] = set()
        for detection in detections:
            best = self._best_match(detection, matched)
            if best is None:
                track = FaceTrack(detection, now)
                self._tracks.append(track)
                matched.add(track.track_id)
            else:
                best.update(detection, now)
                matched.add(best.track_id)

        self._tracks = [t for t in self._tracks if not t.is_stale(now, self.max_age_seconds)]
        return self.tracks()

    def tracks(self) -> List[FaceTrack]:
        return list(self._tracks)

    def clear(self) -> None:
        self._tracks.clear()

    def _best_match(self, detection: BoundingBox, matched: set[str]) -> Optional[FaceTrack]:
        best: Optional[FaceTrack] = None
        best_iou = self.iou_threshold
        for track in self._tracks:
            if track.track_id in matched:
                continue
            overlap = track.match_bounds.iou(detection)
            if overlap > best_iou:
                best_iou = overlap
                best = track
        return best


class TrackReconciler:
    """Arena of live ``TrackedFace`` objects keyed by track id."""

    def __init__(self, event_bus: RecognitionEventBus, warmup_frames: int):
        self.event_bus = event_bus
        self.warmup_frames = max(1, int(warmup_frames))
        self._faces: Dict[str, TrackedFace] = {}
        self.logger = setup_logger(self.__class__.__name__)

    def reconcile(self, tracks: Iterable[FaceTrack]) -> List[TrackedFace]:
        live: set[str] = set()
        for track in tracks:
            if not track.updated_this_frame:
                continue
            live.add(track.track_id)
            if track.track_id in self._faces:
                continue
            if track.seen_frames < self.warmup_frames:
                continue
            tracked = TrackedFace(track)
            self._faces[track.track_id] = tracked
            self.logger.debug("Track %s promoted after %d frames", track.track_id, track.seen_frames)
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.FACE_DETECTED,
                    track_id=track.track_id,
                    message="Face detected",
                    success=True,
                )
            )

        for track_id in [tid for tid in self._faces if tid not in live]:
            lost = self._faces.pop(track_id)
            self.event_bus.publish(
                RecognitionEvent(
                    type=RecognitionEventType.TRACK_LOST,
                    track_id=track_id,
                    student_id=lost.student_id,
                    student_name=lost.student_name,
                    message="Track lost",
                )
            )
        return self.faces()

    def faces(self) -> List[TrackedFace]:
        return list(self._faces.values())

    def get(self, track_id: str) -> Optional[TrackedFace]:
        return self._faces.get(track_id)

    def clear(self) -> None:
        self._faces.clear()
