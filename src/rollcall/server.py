"""Read-only HTTP snapshot endpoint served from a file registry.

Routes:
- ``GET /registry``: the whole snapshot document
- ``GET /registry/services/<name>``: one record, or 404
- ``GET /health``: liveness of the endpoint itself

This is what :class:`rollcall.registry.HttpRegistry` consumes on hosts that
cannot read the snapshot file themselves.
"""

import json
import logging
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from .registry.file_registry import SNAPSHOT_ERRORS, FileRegistry

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8471


def _make_handler(registry: FileRegistry):
    """Create a handler class bound to the given registry instance."""

    class SnapshotHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.send_header("Access-Control-Allow-Origin", "*")
            self.end_headers()
            self.wfile.write(body)

        def do_GET(self):
            path = urllib.parse.urlparse(self.path).path.rstrip("/")

            if path == "/health":
                self._json_response({"status": "ok"})
                return

            if path != "/registry" and not path.startswith("/registry/services/"):
                self._json_response({"error": "not found"}, status=404)
                return

            try:
                document = registry.snapshot_document()
            except SNAPSHOT_ERRORS as exc:
                logger.warning("Failed to read registry snapshot: %s", exc)
                self._json_response({"error": "registry unavailable"}, status=503)
                return

            if path == "/registry":
                self._json_response(document)
                return

            name = urllib.parse.unquote(path[len("/registry/services/"):])
            record = document["services"].get(name)
            if record is None:
                self._json_response({"error": "not found"}, status=404)
            else:
                self._json_response(record)

    return SnapshotHTTPHandler


def start_snapshot_server(
    registry: FileRegistry,
    host: str = "127.0.0.1",
    port: int = DEFAULT_PORT,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    handler = _make_handler(registry)
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info("Registry snapshot server listening on %s:%d", *server.server_address[:2])
    return server
