from __future__ import annotations

import threading
from typing import Any, Dict, List, Optional, Protocol

import requests

from .config import BACKEND_TIMEOUT_SECONDS, CompanionSettings
from .exceptions import BackendError
from .logger import mask_token, setup_logger
from .session_state import SessionState


class AttendanceBackend(Protocol):
    def submit(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    def fetch_roster(self) -> List[Dict[str, Any]]:
        ...

    def notify_stop(self) -> None:
        ...

    def forward_event(self, payload: Dict[str, Any]) -> None:
        ...


class HttpAttendanceBackend:
    """requests-based client for the attendance service.

    One ``requests.Session`` is shared by the submission queue, the event
    forwarder and the stop notification, so calls are serialized by a lock.
    """

    def __init__(
        self,
        settings: CompanionSettings,
        state: SessionState,
        timeout: float = BACKEND_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.state = state
        self.timeout = timeout
        self.session = session or requests.Session()
        self._session_lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    @property
    def base_url(self) -> Optional[str]:
        return self.state.resolve_backend_base_url(self.settings.backend_base_url)

    @property
    def service_token(self) -> str:
        return (self.settings.service_token or "").strip()

    @property
    def companion_token(self) -> str:
        return (self.state.access_token or "").strip()

    def _companion_path(self, suffix: str) -> str:
        return f"/companion/sections/{self.state.section_id}/sessions/{self.state.session_id}/{suffix}"

    def _auth_headers(self, companion_header: bool = True) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"
        elif self.companion_token:
            headers["Authorization"] = f"Bearer {self.companion_token}"
            if companion_header:
                headers["X-Companion-Token"] = self.companion_token
        return headers

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            with self._session_lock:
                return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _json_body(resp: requests.Response) -> Any:
        if not resp.content or not resp.text.strip():
            return None
        try:
            return resp.json()
        except ValueError:
            return None

    def submission_url(self) -> str:
        base = self.base_url
        if not base:
            raise BackendError("Backend base URL is not configured")
        use_companion_endpoint = (
            not self.service_token
            and bool(self.companion_token)
            and bool(self.state.session_id)
            and bool(self.state.section_id)
        )
        if use_companion_endpoint:
            return base + self._companion_path("attendance")
        return base + "/attendance"

    def submit(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        url = self.submission_url()
        use_companion_endpoint = "/companion/" in url
        headers = self._auth_headers(companion_header=use_companion_endpoint)
        if "Authorization" not in headers:
            self.logger.warning("Attendance submission missing authorization token; request will likely fail")
        self.logger.info("Submitting attendance for %s to %s", payload.get("studentId"), url)

        resp = self._request("POST", url, json=payload, headers=headers)
        if not resp.ok:
            self.logger.warning("Attendance submission failed: HTTP %s - %s", resp.status_code, resp.text)
            raise BackendError("Attendance API rejected request", status_code=resp.status_code)

        body = self._json_body(resp)
        return body if isinstance(body, dict) else None

    def fetch_roster(self) -> List[Dict[str, Any]]:
        base = self.base_url
        if not base or not self.state.session_id or not self.state.section_id:
            return []
        headers = self._auth_headers()
        if "Authorization" not in headers:
            self.logger.warning("Roster fetch missing authorization token; request may fail")

        resp = self._request("GET", base + self._companion_path("roster"), headers=headers)
        if not resp.ok:
            raise BackendError(f"Roster fetch failed: HTTP {resp.status_code}", status_code=resp.status_code)
        body = self._json_body(resp)
        if not isinstance(body, list):
            return []
        return body

    def notify_stop(self) -> None:
        base = self.base_url
        if not base or not self.state.session_id:
            return
        self.logger.info(
            "Notifying backend that session %s stopped (token %s)",
            self.state.session_id,
            mask_token(self.service_token or self.companion_token),
        )
        resp = self._request(
            "POST",
            f"{base}/sessions/{self.state.session_id}/stop",
            json={"action": "stop"},
            headers=self._auth_headers(),
        )
        if not resp.ok:
            raise BackendError(f"Stop notification failed: HTTP {resp.status_code}", status_code=resp.status_code)

    def forward_event(self, payload: Dict[str, Any]) -> None:
        base = self.base_url
        token = self.companion_token or self.service_token
        if not base or not self.state.section_id or not token:
            return
        resp = self._request(
            "POST",
            base + self._companion_path("recognition-events"),
            json=payload,
            headers={"Accept": "application/json", "Authorization": f"Bearer {token}"},
        )
        if not resp.ok:
            raise BackendError(f"Recognition forward failed: HTTP {resp.status_code}", status_code=resp.status_code)

    def close(self) -> None:
        with self._session_lock:
            self.session.close()
