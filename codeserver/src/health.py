from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """Serve the operator pod's probe and scrape endpoints.

    ``/healthz`` starts failing once shutdown begins, so the kubelet does not
    count a draining operator as healthy. ``/readyz`` follows the informer's
    initial list.
    """

    ready_event: threading.Event
    alive_event: threading.Event | None

    def _send(self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _liveness(self) -> tuple[int, bytes]:
        if self.alive_event is not None and not self.alive_event.is_set():
            return 503, b"stopping"
        return 200, b"ok"

    def _readiness(self) -> tuple[int, bytes]:
        if self.ready_event.is_set():
            return 200, b"ready=true"
        return 503, b"ready=false"

    def do_GET(self) -> None:
        if self.path == "/metrics":
            self._send(200, generate_latest(), CONTENT_TYPE_LATEST)
            return
        check = {"/healthz": self._liveness, "/readyz": self._readiness}.get(self.path)
        if check is None:
            self._send(404, b"not found")
            return
        self._send(*check())

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, alive: threading.Event | None = None
) -> type[_HealthHandler]:
    """Bind the readiness and liveness events to a handler class.

    ``ThreadingHTTPServer`` builds one handler per request without extra
    arguments, so the events travel as class attributes.
    """
    return type(
        "BoundHealthHandler",
        (_HealthHandler,),
        {"ready_event": ready, "alive_event": alive},
    )


def start_health_server(
    ready: threading.Event, port: int, alive: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve health and metrics on *port* from a daemon thread."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, alive=alive))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
