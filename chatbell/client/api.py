"""
HTTP client for the notification store endpoints.

Every call carries the user's bearer token. Non-2xx responses raise
StoreError; transport problems surface as requests.RequestException.
"""
import logging
import pathlib

import requests

from chatbell.models import Notification

log = logging.getLogger("chatbell.client.api")


class StoreError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def load_token(path) -> str | None:
    """Read a persisted bearer token. Returns None when there is none."""
    p = pathlib.Path(path).expanduser()
    try:
        token = p.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return token or None


class StoreClient:

    def __init__(self, base_url: str, token: str, timeout: float = 10.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self.token}"
        resp = self._session.request(method, f"{self.base_url}{path}",
                                     headers=headers, timeout=self.timeout, **kwargs)
        if not 200 <= resp.status_code < 300:
            try:
                detail = resp.json().get("error", resp.text)
            except ValueError:
                detail = resp.text
            raise StoreError(f"{method} {path} failed ({resp.status_code}): {detail}",
                             status_code=resp.status_code)
        return resp

    def fetch_notifications(self, fresh: bool = False, limit: int | None = None) -> list[Notification]:
        params = {}
        if fresh:
            params["fresh"] = "true"
        if limit is not None:
            params["limit"] = str(limit)
        resp = self._request("GET", "/api/notifications", params=params)
        data = resp.json()
        if not isinstance(data, list):
            raise StoreError("GET /api/notifications returned a non-list body")
        return [Notification.from_dict(d) for d in data]

    def mark_read(self, notification_id: int):
        self._request("PATCH", f"/api/notifications/{notification_id}/read")

    def unread_count(self) -> int:
        resp = self._request("GET", "/api/notifications/unread-count")
        return int(resp.json().get("count", 0))

    def close(self):
        self._session.close()
