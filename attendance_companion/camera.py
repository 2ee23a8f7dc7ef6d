from __future__ import annotations

import os
import threading
import time
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from .exceptions import CameraError
from .logger import setup_logger

BACKEND_ORDER_ENV = "SMARTATTENDANCE_CAMERA_BACKEND_ORDER"
_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "mediafoundation": "Media Foundation",
    "media foundation": "Media Foundation",
    "avfoundation": "AVFoundation",
    "v4l2": "V4L2",
}
_DEFAULT_ORDER = ["Auto", "DirectShow", "Media Foundation", "AVFoundation", "V4L2"]


class FrameSource(Protocol):
    def open(self) -> None:
        ...

    def next_frame(self) -> Optional[np.ndarray]:
        ...

    def close(self) -> None:
        ...


def _preferred_backend_order() -> List[str]:
    raw = os.getenv(BACKEND_ORDER_ENV, "").strip()
    if not raw:
        if os.name == "nt":
            # DirectShow is the stable choice for most Windows webcams.
            return ["DirectShow", "Media Foundation", "Auto"]
        return ["Auto", "V4L2", "AVFoundation"]
    result: List[str] = []
    for item in raw.split(","):
        name = _BACKEND_ALIASES.get(item.strip().lower())
        if name and name not in result:
            result.append(name)
    return result or list(_DEFAULT_ORDER)


def capture_backends() -> List[Tuple[str, Optional[int]]]:
    backend_map = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "AVFoundation": getattr(cv2, "CAP_AVFOUNDATION", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
    }
    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set = set()
    for name in _preferred_backend_order():
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int, probe_reads: int = 6) -> Tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends():
        attempted.append(backend_name)
        if backend is None:
            cap = cv2.VideoCapture(camera_index)
        else:
            cap = cv2.VideoCapture(camera_index, backend)

        if cap.isOpened():
            # Some backends report opened but never deliver a frame.
            for _ in range(probe_reads):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    tried = ", ".join(attempted) if attempted else "default backend"
    raise CameraError(f"Unable to open webcam index {camera_index}. Tried backends: {tried}.")


class OpenCvFrameSource:
    """Webcam frames via ``cv2.VideoCapture``.

    ``next_frame`` returns None on a failed read; after a streak of failures
    the capture is reopened once per cooldown.
    """

    def __init__(
        self,
        camera_index: int = 0,
        fps: float = 30.0,
        reopen_after_failures: int = 30,
        reopen_cooldown_seconds: float = 3.0,
    ):
        self.camera_index = camera_index
        self.fps = fps
        self.reopen_after_failures = reopen_after_failures
        self.reopen_cooldown_seconds = reopen_cooldown_seconds
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self.read_fail_streak = 0
        self.last_reopen_attempt = 0.0
        self._closed = False
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def open(self) -> None:
        with self._lock:
            self._closed = False
        self._open_capture()

    def _open_capture(self) -> None:
        with self._lock:
            if self._closed or self.cap is not None:
                return
            self.cap, self.backend_name = open_camera_capture(self.camera_index)
            self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        self.logger.info("Camera %s opened with %s backend", self.camera_index, self.backend_name)

    def next_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self.cap is None:
                return None
            ok, frame = self.cap.read()
        if ok and frame is not None:
            self.read_fail_streak = 0
            return frame

        self.read_fail_streak += 1
        if self.read_fail_streak >= self.reopen_after_failures:
            self._reopen()
        return None

    def _reopen(self) -> None:
        now = time.monotonic()
        if now - self.last_reopen_attempt < self.reopen_cooldown_seconds:
            return
        self.last_reopen_attempt = now
        self.read_fail_streak = 0
        with self._lock:
            if self._closed:
                return
            if self.cap is not None:
                self.cap.release()
                self.cap = None
        try:
            self._open_capture()
            self.logger.warning("Recovered camera stream by reopening source %s", self.camera_index)
        except CameraError as exc:
            self.logger.warning("Failed to reopen camera source %s: %s", self.camera_index, exc)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self.cap is not None:
                self.cap.release()
                self.cap = None
