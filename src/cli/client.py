"""HTTP client for the Claude Notify server."""

import json
import urllib.error
import urllib.parse
import urllib.request
from typing import Optional

# Default API endpoint
DEFAULT_API_URL = "http://127.0.0.1:8421"
API_TIMEOUT = 2  # seconds


class NotifyClient:
    """Client for the Claude Notify server."""

    def __init__(self, api_url: Optional[str] = None, timeout: float = API_TIMEOUT):
        """
        Initialize client.

        Args:
            api_url: Base URL for API (default: http://127.0.0.1:8421)
            timeout: Default per-request timeout in seconds
        """
        self.api_url = (api_url or DEFAULT_API_URL).rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Args:
            method: HTTP method (GET, POST)
            path: API path
            data: Optional JSON data
            timeout: Optional timeout in seconds (default: self.timeout)

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (server not running)
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        url = f"{self.api_url}{path}"
        request_timeout = timeout if timeout is not None else self.timeout

        try:
            headers = {"Content-Type": "application/json"}
            body = json.dumps(data).encode() if data is not None else None

            req = urllib.request.Request(url, data=body, headers=headers, method=method)
            with urllib.request.urlopen(req, timeout=request_timeout) as response:
                if response.status in (200, 201):
                    return json.loads(response.read().decode()), True, False
                return None, False, False

        except urllib.error.HTTPError:
            # Server answered with an error status
            return None, False, False
        except (urllib.error.URLError, OSError, ValueError):
            # Connection refused, timeout, garbled response - server unavailable
            return None, False, True

    def health(self) -> bool:
        _, success, _ = self._request("GET", "/health")
        return success

    def send_hook(self, payload: dict, timeout: Optional[float] = None) -> tuple[Optional[dict], bool, bool]:
        """Forward a hook payload to the server."""
        return self._request("POST", "/hooks/claude", data=payload, timeout=timeout)

    def get_project(self, project: str) -> tuple[Optional[dict], bool, bool]:
        """Persisted snapshot for a project."""
        return self._request("GET", f"/projects/{urllib.parse.quote(project, safe='')}")

    def list_heartbeats(self) -> Optional[dict]:
        data, success, _ = self._request("GET", "/heartbeats")
        return data if success else None
