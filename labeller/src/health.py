from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_check: Callable[[], list[str]]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            not_ready = self.ready_check()
            if not not_ready:
                self._respond(200, b"ready=true")
            else:
                self._respond(503, f"ready=false waiting={','.join(not_ready)}".encode())
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("labeller.health").debug(fmt, *args)


def pending_kinds(ready: dict[str, threading.Event]) -> Callable[[], list[str]]:
    """Return a readiness check listing the kinds whose initial sync is not done."""

    def check() -> list[str]:
        return sorted(kind for kind, event in ready.items() if not event.is_set())

    return check


def make_health_handler(ready: dict[str, threading.Event]) -> type[_HealthHandler]:
    """Return a handler class bound to the per-kind readiness events.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_check = staticmethod(pending_kinds(ready))

    return _BoundHealthHandler


def start_health_server(ready: dict[str, threading.Event], port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
