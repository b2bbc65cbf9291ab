"""HTTP client for the relay's hook server."""

import json
import os
import urllib.error
import urllib.request
from typing import Optional

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:8421"
API_TIMEOUT = 2  # seconds


class RelayClient:
    """Client for the relay hook server API."""

    def __init__(self, api_url: Optional[str] = None):
        """
        Args:
            api_url: Base URL for API (default: http://127.0.0.1:8421)
        """
        self.api_url = api_url or os.environ.get("CLAUDE_RELAY_URL", DEFAULT_API_URL)

    def _request(self, method: str, path: str, data: Optional[dict] = None, timeout: Optional[int] = None) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (relay unavailable)
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else API_TIMEOUT

        try:
            headers = {"Content-Type": "application/json"}
            body = json.dumps(data).encode() if data is not None else None

            req = urllib.request.Request(url, data=body, headers=headers, method=method)
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                return json.loads(response.read().decode()), True, False

        except urllib.error.HTTPError as e:
            # API responded but with error status
            try:
                return json.loads(e.read().decode()), False, False
            except ValueError:
                return None, False, False
        except (urllib.error.URLError, OSError):
            # Connection refused, timeout, etc.
            return None, False, True

    def session_start(self, payload: dict) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", "/events/session-start", payload)

    def stop(self, session_id: str, event: str = "Stop", summary: Optional[str] = None, label: Optional[str] = None) -> tuple[Optional[dict], bool, bool]:
        payload = {"session_id": session_id, "event": event}
        if summary:
            payload["summary"] = summary
        if label:
            payload["label"] = label
        # Notification delivery can take a few seconds
        return self._request("POST", "/events/stop", payload, timeout=10)

    def enable_notify(self, session_id: str, label: Optional[str] = None, nvim_socket: Optional[str] = None) -> tuple[Optional[dict], bool, bool]:
        payload = {"session_id": session_id}
        if label:
            payload["label"] = label
        if nvim_socket:
            payload["nvim_socket"] = nvim_socket
        return self._request("POST", "/sessions/enable-notify", payload)

    def list_sessions(self, active: bool = False, notify: bool = False) -> Optional[list]:
        """List sessions, or None if the relay is unavailable or errored."""
        query = f"?active={str(active).lower()}&notify={str(notify).lower()}"
        data, success, _ = self._request("GET", f"/sessions{query}")
        if success and data:
            return data.get("sessions", [])
        return None

    def cleanup(self) -> tuple[Optional[dict], bool, bool]:
        return self._request("POST", "/cleanup", {})
