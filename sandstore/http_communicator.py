"""Message exchange over HTTP: a POST /message endpoint and a client."""

from __future__ import annotations

import http.client
import json
import threading
import urllib.error
import urllib.request
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from .communication import (
    Communicator,
    HandlerNotSetError,
    InvalidJSONError,
    Message,
    MessageHandler,
    MessageMarshalError,
    MessageSendError,
    MissingRequiredFieldsError,
    PayloadMarshalError,
    PayloadUnmarshalError,
    Response,
    SandCode,
    ServerStartError,
    ServerStopError,
    decode_payload,
    encode_payload,
    payload_type_for,
)
from .log_service import LogEvent, LogService

DEFAULT_CLIENT_TIMEOUT = 5.0
_STOP_TIMEOUT = 5.0

_CODE_TO_STATUS = {
    SandCode.OK: 200,
    SandCode.BAD_REQUEST: 400,
    SandCode.NOT_FOUND: 404,
    SandCode.INTERNAL: 500,
    SandCode.UNAVAILABLE: 503,
}
_STATUS_TO_CODE = {status: code for code, status in _CODE_TO_STATUS.items()}

_ERROR_HEADERS = {
    "Content-Type": "text/plain; charset=utf-8",
    "X-Content-Type-Options": "nosniff",
}


def map_from_http_code(code: int) -> SandCode:
    """Translate an HTTP status to a SandCode; unknown statuses are INTERNAL."""
    return _STATUS_TO_CODE.get(int(code), SandCode.INTERNAL)


def map_to_http_code(code) -> int:
    """Translate a SandCode to an HTTP status; unknown codes give 500."""
    try:
        return _CODE_TO_STATUS[SandCode(code)]
    except ValueError:
        return 500


def _error_text(status: int, text: str) -> tuple[int, dict[str, str], bytes]:
    return status, dict(_ERROR_HEADERS), (text + "\n").encode("utf-8")


def _split_address(address: str) -> tuple[str, int]:
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"address {address!r} has no port")
    return host.strip("[]"), int(port)


class _MessageRequestHandler(BaseHTTPRequestHandler):
    server_version = "sandstore"

    def log_message(self, format, *args) -> None:  # noqa: A002
        """Send access lines to the communicator's log service instead of stderr."""
        communicator = getattr(self.server, "communicator", None)
        if communicator is None:
            return
        try:
            text = format % args
        except (TypeError, ValueError):
            text = str(format)
        communicator.ls.debug(LogEvent("HTTP access", {
            "remoteAddr": f"{self.client_address[0]}:{self.client_address[1]}",
            "request": text,
        }))

    def _dispatch(self) -> None:
        if self.path.split("?", 1)[0] != "/message":
            status, headers, body = _error_text(404, "404 page not found")
        else:
            try:
                length = int(self.headers.get("Content-Length") or 0)
                payload = self.rfile.read(length) if length > 0 else b""
            except (ValueError, OSError):
                status, headers, body = _error_text(400, "failed to read HTTP request body")
            else:
                status, headers, body = self.server.communicator._process(
                    self.command, payload, f"{self.client_address[0]}:{self.client_address[1]}"
                )
        self.send_response(status)
        for key, value in headers.items():
            if key.lower() != "content-length":
                self.send_header(key, value)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _dispatch


class HTTPCommunicator(Communicator):
    """Serves ``POST /message`` and sends messages to other nodes over HTTP."""

    def __init__(self, listen_address: str, ls: LogService) -> None:
        self.listen_address = listen_address
        self.ls = ls
        self._handler: MessageHandler | None = None
        self._server: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._opener = urllib.request.build_opener(urllib.request.ProxyHandler({}))

    def address(self) -> str:
        return self.listen_address

    def start(self, handler: MessageHandler | None) -> None:
        """Begin serving in a background thread."""
        self.ls.info(LogEvent("Starting HTTP communicator", {"address": self.listen_address}))
        self._handler = handler
        try:
            host, port = _split_address(self.listen_address)
            server = ThreadingHTTPServer((host, port), _MessageRequestHandler)
        except (OSError, ValueError) as err:
            self.ls.error(LogEvent("HTTP server error", {"address": self.listen_address, "error": str(err)}))
            raise ServerStartError() from err
        server.communicator = self
        server.daemon_threads = True
        thread = threading.Thread(
            target=server.serve_forever, name=f"http-{self.listen_address}", daemon=True
        )
        with self._lock:
            self._server, self._thread = server, thread
        thread.start()
        self.ls.info(LogEvent("HTTP communicator started successfully", {"address": self.listen_address}))

    def stop(self) -> None:
        """Shut the server down; stopping an idle communicator does nothing."""
        with self._lock:
            server, thread = self._server, self._thread
            self._server = self._thread = None
        if server is None:
            self.ls.debug(LogEvent("HTTP communicator not running, skipping", {"address": self.listen_address}))
            return
        self.ls.info(LogEvent("Stopping HTTP communicator", {"address": self.listen_address}))
        try:
            server.shutdown()
            server.server_close()
        except OSError as err:
            self.ls.error(LogEvent("Failed to stop HTTP server", {"address": self.listen_address, "error": str(err)}))
            raise ServerStopError() from err
        if thread is not None:
            thread.join(_STOP_TIMEOUT)
        self.ls.info(LogEvent("HTTP communicator stopped successfully", {"address": self.listen_address}))

    def send(self, to: str, msg: Message, timeout: float | None = None) -> Response:
        """POST a message to ``to`` and return its response."""
        self.ls.debug(LogEvent("Sending HTTP message", {"to": to, "type": msg.type, "from": msg.sender}))
        msg = replace(msg, sender=self.listen_address)
        try:
            payload = json.loads(encode_payload(msg.payload)) if msg.payload is not None else None
            body = json.dumps({"From": msg.sender, "Type": msg.type, "Payload": payload}).encode("utf-8")
        except (PayloadMarshalError, TypeError, ValueError) as err:
            self.ls.error(LogEvent("Failed to marshal message", {"to": to, "type": msg.type, "error": str(err)}))
            raise MessageMarshalError() from err

        limit = DEFAULT_CLIENT_TIMEOUT if timeout is None else min(timeout, DEFAULT_CLIENT_TIMEOUT)
        try:
            request = urllib.request.Request(
                f"http://{to}/message",
                data=body,
                method="POST",
                headers={"Content-Type": "application/json"},
            )
        except ValueError as err:
            self.ls.error(LogEvent("Failed to create HTTP request", {"to": to, "type": msg.type, "error": str(err)}))
            raise MessageSendError("failed to create HTTP request") from err

        try:
            with self._opener.open(request, timeout=limit) as resp:
                status, raw_headers, data = resp.status, resp.headers, resp.read()
        except urllib.error.HTTPError as err:
            with err:
                status, raw_headers, data = err.code, err.headers, err.read()
        except (urllib.error.URLError, OSError, ValueError, http.client.HTTPException) as err:
            self.ls.error(LogEvent("Failed to send HTTP request", {"to": to, "type": msg.type, "error": str(err)}))
            raise MessageSendError("failed to send HTTP request") from err

        headers: dict[str, str] = {}
        for key, value in (raw_headers.items() if raw_headers is not None else []):
            headers.setdefault(key, value)
        self.ls.debug(LogEvent("HTTP message sent successfully", {"to": to, "type": msg.type, "statusCode": status}))
        return Response(code=map_from_http_code(status), body=data, headers=headers)

    def _process(self, method: str, body: bytes, remote: str) -> tuple[int, dict[str, str], bytes]:
        if method != "POST":
            self.ls.warn(LogEvent("HTTP method not allowed", {"method": method, "remoteAddr": remote}))
            return _error_text(405, "Method not allowed")

        try:
            raw = json.loads(body)
        except ValueError as err:
            self.ls.error(LogEvent("Invalid JSON in HTTP request", {"remoteAddr": remote, "error": str(err)}))
            return _error_text(400, str(InvalidJSONError()))
        if raw is None:
            raw = {}
        sender = raw.get("From") if isinstance(raw, dict) else None
        msg_type = raw.get("Type") if isinstance(raw, dict) else None
        if not isinstance(raw, dict) or not isinstance(sender or "", str) or not isinstance(msg_type or "", str):
            self.ls.error(LogEvent("Invalid JSON in HTTP request", {"remoteAddr": remote}))
            return _error_text(400, str(InvalidJSONError()))
        if not sender or not msg_type:
            self.ls.warn(LogEvent("Missing required fields in HTTP request", {
                "remoteAddr": remote, "from": sender, "type": msg_type,
            }))
            return _error_text(400, str(MissingRequiredFieldsError()))

        self.ls.debug(LogEvent("Received HTTP message", {"from": sender, "type": msg_type, "remoteAddr": remote}))

        payload = None
        if payload_type_for(msg_type) is not None:
            raw_payload = json.dumps(raw["Payload"]) if "Payload" in raw else b""
            try:
                payload = decode_payload(msg_type, raw_payload)
            except PayloadUnmarshalError as err:
                self.ls.error(LogEvent("Failed to unmarshal payload", {"from": sender, "type": msg_type, "error": str(err)}))
                return _error_text(400, f"Invalid payload for message type {msg_type}: {err}")
        else:
            self.ls.warn(LogEvent("No payload type registered for message type", {"from": sender, "type": msg_type}))

        handler = self._handler
        if handler is None:
            self.ls.error(LogEvent("HTTP handler not set", {"from": sender, "type": msg_type}))
            return _error_text(500, str(HandlerNotSetError()))

        try:
            resp = handler(Message(sender, msg_type, payload))
        except Exception as err:  # handler failures become 500 responses
            self.ls.error(LogEvent("Message handler error", {"from": sender, "type": msg_type, "error": str(err)}))
            return _error_text(500, f"Handler error: {err}")

        if resp is None:
            self.ls.debug(LogEvent("HTTP response sent", {"to": sender, "code": "OK", "httpStatus": 200}))
            return 200, {}, b""
        status = map_to_http_code(resp.code)
        self.ls.debug(LogEvent("HTTP response sent", {"to": sender, "code": resp.code, "httpStatus": status}))
        return status, dict(resp.headers or {}), bytes(resp.body or b"")