from .config import CompanionSettings, RecognitionSettings
from .events import RecognitionEvent, RecognitionEventBus, RecognitionEventType
from .exceptions import AttendanceError
from .session import SessionManager, SessionRequest, opencv_runtime_factory

__version__ = "0.1.0"

__all__ = [
    "AttendanceError",
    "CompanionSettings",
    "RecognitionEvent",
    "RecognitionEventBus",
    "RecognitionEventType",
    "RecognitionSettings",
    "SessionManager",
    "SessionRequest",
    "opencv_runtime_factory",
]
