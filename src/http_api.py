from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import urlparse


LOG = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], dict[str, Any]]

_CLIENT_ERROR_KINDS = {"validation_failure", "config_missing"}
# Parse failures are reported in a 200 body; the provider call itself worked.
_OK_ERROR_KINDS = {"parse_failure"}


def response_status(payload: dict[str, Any]) -> int:
    if payload.get("success", True) is not False:
        return 200
    kind = str(payload.get("error_kind", ""))
    if kind in _CLIENT_ERROR_KINDS:
        return 400
    if kind in _OK_ERROR_KINDS or not kind:
        return 200
    return 500


def start_api_server(
    host: str,
    port: int,
    get_routes: dict[str, Callable[[], dict[str, Any]]],
    post_routes: dict[str, Handler],
) -> ThreadingHTTPServer:
    class ApiHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def _send_json(self, payload: dict, status_code: int = 200) -> None:
            raw = json.dumps(payload, ensure_ascii=True).encode("utf-8")
            self.send_response(status_code)
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(raw)))
            self.send_header("Cache-Control", "no-store, max-age=0")
            self.send_header("Access-Control-Allow-Origin", "*")
            self.end_headers()
            self.wfile.write(raw)

        def _read_json_body(self) -> dict[str, Any]:
            content_length = int(self.headers.get("Content-Length", "0"))
            if content_length <= 0:
                return {}
            raw = self.rfile.read(content_length)
            if not raw:
                return {}
            payload = json.loads(raw.decode("utf-8"))
            if not isinstance(payload, dict):
                raise ValueError("JSON body must be an object")
            return payload

        def _respond(self, call: Callable[[], dict[str, Any]]) -> None:
            try:
                result = call()
            except ValueError as exc:
                self._send_json({"success": False, "error": "bad_request", "message": str(exc)}, status_code=400)
                return
            except Exception as exc:
                LOG.exception("Unhandled error while serving %s", self.path)
                self._send_json({"success": False, "error": "internal_error", "message": str(exc)}, status_code=500)
                return
            self._send_json(result, status_code=response_status(result))

        def do_OPTIONS(self) -> None:  # noqa: N802
            self.send_response(204)
            self.send_header("Access-Control-Allow-Origin", "*")
            self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")
            self.send_header("Access-Control-Allow-Headers", "Content-Type")
            self.send_header("Content-Length", "0")
            self.end_headers()

        def do_GET(self) -> None:  # noqa: N802
            route = get_routes.get(urlparse(self.path).path)
            if route is None:
                self._send_json({"error": "not_found"}, status_code=404)
                return
            self._respond(route)

        def do_POST(self) -> None:  # noqa: N802
            route = post_routes.get(urlparse(self.path).path)
            try:
                payload = self._read_json_body()
            except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
                self._send_json({"error": "bad_request", "message": str(exc)}, status_code=400)
                return
            if route is None:
                self._send_json({"error": "not_found"}, status_code=404)
                return
            self._respond(lambda: route(payload))

        def log_message(self, format: str, *args: object) -> None:
            LOG.debug("%s - %s", self.address_string(), format % args)

    server = ThreadingHTTPServer((host, port), ApiHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server
