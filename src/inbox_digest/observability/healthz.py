"""
Health and readiness check endpoints for observability.
"""
from http.server import HTTPServer, BaseHTTPRequestHandler
import json
import threading
from datetime import datetime
from typing import Optional

import structlog

from inbox_digest.utils.tz import to_iso, utc_now

logger = structlog.get_logger()

SERVICE_NAME = "inbox-digest"


class CycleTracker:
    """Thread-safe record of the most recent poll cycle outcome."""

    def __init__(self):
        self._lock = threading.Lock()
        self.last_cycle_at: Optional[datetime] = None
        self.last_cycle_ok: Optional[bool] = None

    def mark(self, ok: bool, when: Optional[datetime] = None) -> None:
        with self._lock:
            self.last_cycle_at = when or utc_now()
            self.last_cycle_ok = ok

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "last_cycle_at": to_iso(self.last_cycle_at) if self.last_cycle_at else None,
                "last_cycle_ok": self.last_cycle_ok,
            }


class HealthCheckHandler(BaseHTTPRequestHandler):
    """HTTP handler for health and readiness checks."""

    def __init__(self, *args, tracker: Optional[CycleTracker] = None, **kwargs):
        self.tracker = tracker
        super().__init__(*args, **kwargs)

    def do_GET(self):
        """Handle GET requests for health/readiness."""
        if self.path == '/healthz':
            self.send_health_response()
        elif self.path == '/readyz':
            self.send_readiness_response()
        else:
            self.send_error(404, "Not Found")

    def send_health_response(self):
        response = {"status": "healthy", "service": SERVICE_NAME}
        if self.tracker:
            response.update(self.tracker.snapshot())
        self._send_json(200, response)

    def send_readiness_response(self):
        # Ready once at least one cycle has completed successfully
        snapshot = self.tracker.snapshot() if self.tracker else {"last_cycle_ok": None}
        ready = snapshot.get("last_cycle_ok") is True
        response = {
            "service": SERVICE_NAME,
            "status": "ready" if ready else "not_ready",
            **snapshot,
        }
        self._send_json(200 if ready else 503, response)

    def _send_json(self, status_code: int, body: dict):
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(body).encode('utf-8'))

    def log_message(self, format, *args):
        """Override to suppress default logging."""
        pass


def start_health_server(port: int = 9109, tracker: Optional[CycleTracker] = None):
    """Start health check HTTP server in background thread."""

    def handler_factory(*args, **kwargs):
        return HealthCheckHandler(*args, tracker=tracker, **kwargs)

    server = HTTPServer(('0.0.0.0', port), handler_factory)

    def serve():
        logger.info("Health check server started", port=port)
        server.serve_forever()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()

    return server
