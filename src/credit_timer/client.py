"""HTTP client for a running credit timer API server."""

from __future__ import annotations

import requests

from .engine import TimerSnapshot
from .errors import CreditTimerError, InvalidArgument, StorageUnavailable

DEFAULT_TIMEOUT = 5


def _snapshot_from_status(data: dict) -> TimerSnapshot:
    return TimerSnapshot(
        remaining_credit=data["remaining_time"],
        debt=data["debt_time"],
        is_tracking=data["is_tracking"],
        screen_on=data["screen_on"],
        app_foreground=data["app_foreground"],
        last_update=data["last_update"],
        total_earned=data.get("total_earned", 0),
        total_spent=data.get("total_spent", 0),
    )


class TimerClient:
    """Mirrors the engine's command surface over HTTP.

    Server-side 400/503 responses are raised as InvalidArgument /
    StorageUnavailable so callers handle local and remote engines the same way.
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: dict | None = None):
        url = f"{self.base_url}{path}"
        try:
            if method == "GET":
                response = requests.get(url, timeout=self.timeout)
            else:
                response = requests.post(url, json=payload or {}, timeout=self.timeout)
        except requests.RequestException as e:
            raise CreditTimerError(f"Cannot reach credit timer server at {self.base_url}: {e}") from e

        if response.status_code == 400:
            raise InvalidArgument(response.json().get("detail", "invalid argument"))
        if response.status_code == 503:
            raise StorageUnavailable(response.json().get("detail", "storage unavailable"))
        if response.status_code >= 400:
            raise CreditTimerError(f"{method} {path} failed: HTTP {response.status_code} {response.text[:200]}")
        return response.json()

    def get_snapshot(self) -> TimerSnapshot:
        return _snapshot_from_status(self._request("GET", "/api/timer"))

    def start_tracking(self) -> TimerSnapshot:
        return _snapshot_from_status(self._request("POST", "/api/timer/start"))

    def stop_tracking(self) -> TimerSnapshot:
        return _snapshot_from_status(self._request("POST", "/api/timer/stop"))

    def add_credit(self, seconds: int) -> TimerSnapshot:
        return _snapshot_from_status(self._request("POST", "/api/timer/credit", {"seconds": seconds}))

    def reset(self) -> TimerSnapshot:
        return _snapshot_from_status(self._request("POST", "/api/timer/reset"))

    def set_screen_on(self, screen_on: bool) -> TimerSnapshot:
        return _snapshot_from_status(self._request("POST", "/api/timer/screen", {"screen_on": screen_on}))

    def set_app_foreground(self, app_foreground: bool) -> TimerSnapshot:
        state = "foreground" if app_foreground else "background"
        return _snapshot_from_status(self._request("POST", "/api/timer/app-state", {"state": state}))

    def export_data(self) -> dict:
        return self._request("GET", "/api/timer/export")

    def health(self) -> dict:
        return self._request("GET", "/health")
