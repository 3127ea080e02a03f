"""nurl executor - HTTP request execution."""

import json
import logging
import time
from typing import Any

import requests

from nurl.auth import NO_AUTH, Auth

logger = logging.getLogger(__name__)


class RequestResult:
    """Result of an HTTP request."""

    def __init__(self):
        self.status_code: int = 0
        self.reason: str = ""
        self.headers: dict[str, str] = {}
        self.body: Any = None  # parsed JSON or raw text
        self.elapsed_ms: float = 0
        self.size_bytes: int = 0
        self.error: str | None = None
        self.raw_text: str = ""

    def snapshot(self) -> dict:
        """Response record that chain ``extract`` paths are evaluated against."""
        return {
            "status": self.status_code,
            "status_text": self.reason,
            "headers": dict(self.headers),
            "body": self.body,
            "time_ms": self.elapsed_ms,
            "size_bytes": self.size_bytes,
        }


def execute_request(
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    body: Any = None,
    auth: Auth | None = None,
    timeout: int = 30,
) -> RequestResult:
    """Execute an HTTP request and return structured result.

    - dict/list bodies are sent as JSON, strings as UTF-8 data
    - auth material adds headers or query parameters
    - attempts to parse the response as JSON, falls back to raw text
    - never raises; a transport failure sets the error field
    """
    result = RequestResult()
    auth = auth or NO_AUTH

    req_headers = dict(headers or {})
    req_headers.update(auth.headers())

    kwargs: dict[str, Any] = {
        "method": method.upper(),
        "url": url,
        "headers": req_headers,
        "params": auth.params() or None,
        "timeout": timeout,
        "allow_redirects": True,
    }
    if isinstance(body, dict | list):
        kwargs["data"] = json.dumps(body).encode("utf-8")
        if not any(k.lower() == "content-type" for k in req_headers):
            req_headers["Content-Type"] = "application/json"
    elif body is not None and body != "":
        kwargs["data"] = str(body).encode("utf-8")

    logger.debug("%s %s", kwargs["method"], url)
    try:
        start = time.monotonic()
        resp = requests.request(**kwargs)
        result.elapsed_ms = (time.monotonic() - start) * 1000

        result.status_code = resp.status_code
        result.reason = resp.reason or ""
        result.headers = dict(resp.headers)
        result.raw_text = resp.text
        result.size_bytes = len(resp.content or b"")

        try:
            result.body = resp.json()
        except (json.JSONDecodeError, ValueError):
            result.body = resp.text

    except requests.exceptions.Timeout:
        result.error = f"Request timed out after {timeout}s"
    except requests.exceptions.ConnectionError as e:
        result.error = f"Connection error: {e}"
    except requests.exceptions.RequestException as e:
        result.error = f"Request failed: {e}"

    if result.error:
        logger.warning("%s %s failed: %s", kwargs["method"], url, result.error)
    return result
