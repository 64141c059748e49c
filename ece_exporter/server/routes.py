"""HTTP request handlers for the exporter.

Provides the scrape endpoint plus health and info endpoints.
"""

from __future__ import annotations

import json
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler
from typing import Any, Dict, Optional, TYPE_CHECKING
from urllib.parse import urlparse

from .. import __description__, __title__, __version__
from .exposition import CONTENT_TYPE_LATEST, render_metric_set

if TYPE_CHECKING:
    from .workers import ExporterState

SCRAPE_TIMEOUT_HEADER = "X-Prometheus-Scrape-Timeout-Seconds"


class ExporterRequestHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the exporter.

    Serves:
    - /metrics: Prometheus exposition of the latest ECE state
    - /health: liveness probe
    - /: name, version and collector status
    """

    # These will be set by the server
    server_state: Optional["ExporterState"] = None
    collector_status: Optional[Dict[str, Any]] = None
    url_prefix: str = ""
    scrape_timeout_offset: float = 0.5
    verbose: bool = False

    server_version = f"{__title__}/{__version__}"

    def do_GET(self):
        parsed = urlparse(self.path)
        if self._maybe_redirect_root(parsed):
            return
        stripped = self._strip_prefix(parsed.path)
        if stripped is None:
            return self._handle_not_found()

        if stripped == "/metrics":
            return self._handle_metrics()
        if stripped == "/health":
            return self._handle_health()
        if stripped == "/":
            return self._handle_root()
        return self._handle_not_found()

    def log_message(self, format, *args):
        if self.verbose:
            print(f"[http] {self.address_string()} - {format % args}", flush=True)

    # --- API Handlers ---

    def _handle_metrics(self):
        state = self.server_state
        if not state:
            self._send_json({"error": "Server not initialized."}, status_code=HTTPStatus.SERVICE_UNAVAILABLE)
            return

        result = state.scrape(timeout=self._scrape_timeout())
        if not result.ok:
            detail = "; ".join(str(o) for o in result.omitted) or "no data"
            self._send_json(
                {"error": f"No usable ECE data available: {detail}"},
                status_code=HTTPStatus.SERVICE_UNAVAILABLE,
            )
            return

        body = render_metric_set(result.metric_set)
        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", CONTENT_TYPE_LATEST)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store, max-age=0")
        self.end_headers()
        self.wfile.write(body)

    def _handle_health(self):
        self._send_json({"msg": "Healthy"})

    def _handle_root(self):
        self._send_json({
            "name": __title__,
            "version": __version__,
            "description": __description__,
            "collector": self.collector_status or {},
        })

    def _handle_not_found(self):
        self._send_json(
            {"error_code": 404, "message": "HTTP 404 Not Found"},
            status_code=HTTPStatus.NOT_FOUND,
        )

    # --- Helper Methods ---

    def _scrape_timeout(self) -> Optional[float]:
        """Scraper-supplied deadline, less the configured safety offset."""
        raw = self.headers.get(SCRAPE_TIMEOUT_HEADER)
        if not raw:
            return None
        try:
            timeout = float(raw)
        except ValueError:
            return None
        return max(0.0, timeout - self.scrape_timeout_offset)

    def _send_json(self, data: Any, *, status_code: HTTPStatus = HTTPStatus.OK):
        body = json.dumps(data).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Cache-Control", "no-store, max-age=0")
        self.end_headers()
        self.wfile.write(body)

    def _strip_prefix(self, path: str) -> Optional[str]:
        norm_prefix = (self.url_prefix or "").rstrip("/")
        if not norm_prefix:
            return path or "/"
        if not norm_prefix.startswith("/"):
            norm_prefix = f"/{norm_prefix}"
        if not path.startswith(norm_prefix):
            return None
        stripped = path[len(norm_prefix):] or "/"
        if not stripped.startswith("/"):
            stripped = "/" + stripped
        return stripped

    def _maybe_redirect_root(self, parsed) -> bool:
        prefix = self.url_prefix
        if not prefix:
            return False
        norm_prefix = prefix.rstrip("/") or "/"
        if not norm_prefix.startswith("/"):
            norm_prefix = f"/{norm_prefix}"
        if parsed.path == norm_prefix and not parsed.path.endswith("/"):
            location = norm_prefix + "/"
            if parsed.query:
                location += f"?{parsed.query}"
            self.send_response(HTTPStatus.MOVED_PERMANENTLY)
            self.send_header("Location", location)
            self.end_headers()
            return True
        return False
