import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

ENV_PREFIX = "SMARTATTENDANCE_COMPANION_"
RECOGNITION_ENV_PREFIX = "SMARTATTENDANCE_RECOGNITION_"

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4455
DEFAULT_BACKEND_URL = "http://localhost:18080/api"


def _str_env(name: str, default: Optional[str]) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _float_env(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def sanitize_base_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    trimmed = value.strip()
    while trimmed.endswith("/") and len(trimmed) > 1:
        trimmed = trimmed[:-1]
    return trimmed or None


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


BASE_DIR = Path(__file__).resolve().parent.parent
LOG_DIR = Path(_str_env(ENV_PREFIX + "LOG_DIR", str(BASE_DIR / "logs")))

# Session lifecycle timing
HEARTBEAT_INTERVAL_SECONDS = 5.0
AUTO_STOP_POLL_INTERVAL_SECONDS = 30.0
MIN_AUTO_STOP_POLL_SECONDS = 5.0

# Backend / event bus
BACKEND_TIMEOUT_SECONDS = 5.0
EVENT_HISTORY_SIZE = 256
DEFAULT_LATE_THRESHOLD_MINUTES = 15
MAX_LATE_THRESHOLD_MINUTES = 240

# Recognition crop fed to the recognizer
FACE_CROP_SIZE = (200, 200)


def _default_data_dir() -> Path:
    home = Path.home()
    if not str(home):
        return Path("companion-data").resolve()
    return (home / ".smartattendance" / "companion").resolve()


@dataclass
class CompanionSettings:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    data_dir: Path = field(default_factory=_default_data_dir)
    backend_base_url: Optional[str] = DEFAULT_BACKEND_URL
    service_token: str = ""
    version: str = "dev"

    def __post_init__(self) -> None:
        if self.port <= 0 or self.port > 65535:
            self.port = DEFAULT_PORT
        self.backend_base_url = sanitize_base_url(self.backend_base_url) or DEFAULT_BACKEND_URL
        self.service_token = (self.service_token or "").strip()

    @classmethod
    def from_env(cls) -> "CompanionSettings":
        data_dir = _str_env(ENV_PREFIX + "DATA_DIR", None)
        return cls(
            host=_str_env(ENV_PREFIX + "HOST", DEFAULT_HOST),
            port=_int_env(ENV_PREFIX + "PORT", DEFAULT_PORT),
            data_dir=Path(data_dir).resolve() if data_dir else _default_data_dir(),
            backend_base_url=_str_env(ENV_PREFIX + "BACKEND_URL", DEFAULT_BACKEND_URL),
            service_token=_str_env(ENV_PREFIX + "SERVICE_TOKEN", "") or "",
            version=_str_env(ENV_PREFIX + "VERSION", "dev") or "dev",
        )


@dataclass
class RecognitionSettings:
    """Thresholds and frame-gating constants for the live decision engine.

    Distances follow the LBPH convention: lower means more confident.
    Out-of-range values are pulled back to the documented floors or defaults.
    """

    auto_accept_max_distance: float = 35.0
    manual_review_max_distance: float = 55.0
    min_frames: int = 6
    min_motion: float = 60.0
    min_face: int = 160
    attempt_interval_ms: int = 1500
    blur_threshold: float = 80.0
    max_manual_prompts: int = 3
    camera_index: int = 0
    camera_fps: float = 30.0
    confirmation_timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        if not _finite(self.auto_accept_max_distance) or self.auto_accept_max_distance < 0:
            self.auto_accept_max_distance = 35.0
        if not _finite(self.manual_review_max_distance) or self.manual_review_max_distance < 0:
            self.manual_review_max_distance = 55.0
        if self.manual_review_max_distance < self.auto_accept_max_distance:
            self.manual_review_max_distance = self.auto_accept_max_distance
        self.min_frames = max(3, int(self.min_frames))
        self.min_motion = max(20.0, float(self.min_motion)) if _finite(self.min_motion) else 60.0
        self.min_face = max(120, int(self.min_face))
        self.attempt_interval_ms = max(750, int(self.attempt_interval_ms))
        if not _finite(self.blur_threshold) or self.blur_threshold <= 0.0:
            self.blur_threshold = 80.0
        self.max_manual_prompts = max(1, int(self.max_manual_prompts))
        if not _finite(self.camera_fps) or self.camera_fps <= 0:
            self.camera_fps = 30.0
        if self.confirmation_timeout_seconds is not None and (
            not _finite(self.confirmation_timeout_seconds) or self.confirmation_timeout_seconds <= 0
        ):
            self.confirmation_timeout_seconds = None

    @property
    def warmup_frames(self) -> int:
        return max(2, min(self.min_frames, 5))

    @property
    def frame_interval_seconds(self) -> float:
        return max(0.02, 1.0 / max(15.0, self.camera_fps))

    @classmethod
    def from_env(cls) -> "RecognitionSettings":
        p = RECOGNITION_ENV_PREFIX
        return cls(
            auto_accept_max_distance=_float_env(p + "AUTO_ACCEPT_MAX_DISTANCE", 35.0),
            manual_review_max_distance=_float_env(p + "MANUAL_REVIEW_MAX_DISTANCE", 55.0),
            min_frames=_int_env(p + "MIN_FRAMES", 6),
            min_motion=_float_env(p + "MOTION_THRESHOLD", 60.0),
            min_face=_int_env(p + "MIN_FACE", 160),
            attempt_interval_ms=_int_env(p + "INTERVAL_MS", 1500),
            blur_threshold=_float_env(p + "BLUR_VARIANCE_THRESHOLD", 80.0),
            max_manual_prompts=_int_env(p + "MAX_MANUAL_PROMPTS", 3),
            camera_index=_int_env(p + "CAMERA_INDEX", 0),
            camera_fps=_float_env(p + "CAMERA_FPS", 30.0),
            confirmation_timeout_seconds=_float_env(p + "CONFIRMATION_TIMEOUT_SECONDS", None),
        )


VERBOSE_LOGGING = _bool_env(ENV_PREFIX + "VERBOSE", False)
