from typing import Optional


class AttendanceError(Exception):
    """Base exception for the attendance companion."""


class CameraError(AttendanceError):
    """Raised when the frame source cannot be opened or read."""


class DetectorError(AttendanceError):
    """Raised when the face detector cannot be initialized or run."""


class RecognizerError(AttendanceError):
    """Raised when the face recognizer model cannot be loaded or run."""


class BackendError(AttendanceError):
    """Raised when the attendance backend call fails or returns non-2xx."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionError(AttendanceError):
    """Raised for invalid session requests or lifecycle misuse."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code
