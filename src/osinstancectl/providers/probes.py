"""Network probes used for readiness and status checks."""
from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.request
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

HEALTH_PATH = "/system/action/health"
VERSION_PATH = "/assets/version.txt"


@dataclass(slots=True)
class HttpProbe:
    """Small HTTP client for the instance's local endpoints.

    Requests go to ``127.0.0.1:<port>`` through the instance's reverse proxy
    with a short timeout and a small retry budget. "Patient" probing uses
    longer timeouts and more retries.
    """

    timeout: float = 1.0
    retries: int = 2
    retry_delay: float = 1.0
    host: str = "127.0.0.1"

    def port_open(self, port: int | None) -> bool:
        """Return ``True`` when a TCP connection to *port* succeeds."""
        if port is None:
            return False
        try:
            with socket.create_connection((self.host, port), timeout=self.timeout):
                return True
        except OSError:
            return False

    def fetch(self, port: int, path: str) -> str | None:
        """Return the body of ``GET http://host:port/path`` or ``None``."""
        url = f"http://{self.host}:{port}{path}"
        attempts = max(0, self.retries) + 1
        for attempt in range(1, attempts + 1):
            request = urllib.request.Request(url, headers={"Accept": "*/*"})
            try:
                with urllib.request.urlopen(request, timeout=self.timeout) as resp:  # noqa: S310
                    return resp.read().decode("utf-8", errors="replace")
            except urllib.error.HTTPError as exc:
                LOGGER.debug("GET %s returned HTTP %s", url, exc.code)
                return None
            except (urllib.error.URLError, OSError) as exc:
                LOGGER.debug("GET %s failed (attempt %s/%s): %s", url, attempt, attempts, exc)
            if attempt < attempts:
                time.sleep(self.retry_delay)
        return None

    def healthy(self, port: int | None) -> bool:
        """Return ``True`` when the health endpoint reports ``running``."""
        if port is None:
            return False
        body = self.fetch(port, HEALTH_PATH)
        if body is None:
            return False
        try:
            payload = json.loads(body)
        except ValueError:
            return False
        return isinstance(payload, dict) and payload.get("status") == "running"

    def builtin_version(self, port: int | None) -> str | None:
        """Return the version string served by the instance, if available."""
        if port is None:
            return None
        body = self.fetch(port, VERSION_PATH)
        return body.strip() if body is not None else None


__all__ = ["HEALTH_PATH", "HttpProbe", "VERSION_PATH"]
