import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests


class MirrorApiError(RuntimeError):
    """Network or server failure talking to the Cadence API."""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code >= 500


class CadenceApiClient:
    """Minimal HTTP client for the endpoints the mirror needs."""

    def __init__(self, base_url: str, token: str, *, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=json,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise MirrorApiError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            raise MirrorApiError(
                str(body.get("detail") or f"{method} {path} returned {resp.status_code}"),
                status_code=resp.status_code,
                error_code=body.get("error_code"),
            )
        return resp.json()

    def get_entitlement(self) -> Dict[str, Any]:
        return self._request("GET", "/v1/entitlement")

    def start_trial(self, timezone_name: Optional[str] = None) -> Dict[str, Any]:
        return self._request("POST", "/v1/billing/trial/start", json={"timezone": timezone_name})

    def submit_checkin(
        self,
        *,
        week_number: int,
        payload: Dict[str, Any],
        checkin_id: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Submit a weekly check-in. Pass the same ``checkin_id`` when retrying
        so the server replays instead of scoring twice.
        """
        body = {
            "checkin_id": checkin_id or str(uuid.uuid4()),
            "week_number": week_number,
            "payload": payload,
            "completed_at": (completed_at or datetime.now(timezone.utc)).isoformat(),
        }
        return self._request("POST", "/v1/checkins/weekly", json=body)
