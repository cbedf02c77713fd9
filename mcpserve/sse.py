"""Server-sent-events transport for an MCP server.

The handlers work on small request and response objects so that they can be
mounted behind any router.  A request offers ``method``, ``path``, ``query``
(the raw query string), ``headers``, ``body`` (bytes) and ``disconnected``
(an object with ``is_set()``).  A response offers ``start(status, headers)``,
``write(text)`` and ``flush()``.

The wrapped MCP server must provide ``register_session(context, session)``,
``unregister_session(context, session_id)``, ``with_context(context, session)``
and ``handle_message(context, message)``; contexts are plain dictionaries.
"""

from __future__ import annotations

import json
import logging
import queue
import select
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs, unquote, urlsplit

from mcpserve.protocol import (
    JSONRPC_VERSION,
    DynamicPathConfigError,
    ErrorCode,
    create_error_response,
    format_sse_event,
    normalize_url_path,
)
from mcpserve.session import SSESession

log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05
_MARSHAL_ERROR_EVENT = (
    'event: message\ndata: {"error": "internal error","jsonrpc": "2.0", "id": null}\n\n'
)
_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "Access-Control-Allow-Origin": "*",
}


def _compact(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"))


def _message_event(payload: Any) -> str:
    return format_sse_event("message", _compact(payload))


def _plain_error(response: Any, status: int, message: str) -> None:
    body = message + "\n"
    response.start(
        status,
        {
            "Content-Type": "text/plain; charset=utf-8",
            "X-Content-Type-Options": "nosniff",
            "Content-Length": str(len(body.encode("utf-8"))),
        },
    )
    response.write(body)
    response.flush()


class SSEServer:
    """An MCP transport speaking server-sent events over HTTP."""

    def __init__(
        self,
        server: Any,
        *,
        base_url: str = "",
        base_path: Optional[str] = None,
        message_endpoint: str = "/message",
        sse_endpoint: str = "/sse",
        append_query_to_message_endpoint: bool = False,
        use_full_url_for_message_endpoint: bool = True,
        keep_alive: Optional[bool] = None,
        keep_alive_interval: Optional[float] = None,
        context_func: Optional[Callable[[dict, Any], dict]] = None,
        dynamic_base_path: Optional[Callable[[Any, str], str]] = None,
    ) -> None:
        self.server = server
        self.base_url = base_url
        self.base_path = normalize_url_path(base_path) if base_path is not None else ""
        self.message_endpoint = message_endpoint
        self.sse_endpoint = sse_endpoint
        self.append_query_to_message_endpoint = append_query_to_message_endpoint
        self.use_full_url_for_message_endpoint = use_full_url_for_message_endpoint
        self.keep_alive_interval = 10.0 if keep_alive_interval is None else float(keep_alive_interval)
        self.keep_alive = (keep_alive_interval is not None) if keep_alive is None else keep_alive
        self.context_func = context_func
        self._dynamic_base_path: Optional[Callable[[Any, str], str]] = None
        if dynamic_base_path is not None:

            def normalized(request: Any, session_id: str) -> str:
                return normalize_url_path(dynamic_base_path(request, session_id))

            self._dynamic_base_path = normalized
        self._sessions: dict[str, SSESession] = {}
        self._lock = threading.Lock()
        self._httpd: Optional[ThreadingHTTPServer] = None

    # Endpoint computation

    def message_endpoint_for_client(self, request: Any, session_id: str) -> str:
        """Return the message endpoint, with session id, announced to a client."""
        base_path = self.base_path
        if self._dynamic_base_path is not None:
            base_path = self._dynamic_base_path(request, session_id)
        endpoint = normalize_url_path(base_path, self.message_endpoint)
        if self.use_full_url_for_message_endpoint and self.base_url:
            endpoint = self.base_url + endpoint
        return f"{endpoint}?sessionId={session_id}"

    def url_path(self, value: str) -> str:
        """Return the path component of a URL."""
        try:
            return urlsplit(value).path
        except ValueError as exc:
            raise ValueError(f"failed to parse URL {value}: {exc}") from exc

    def complete_sse_endpoint(self) -> str:
        """Return the full SSE URL; not available with a dynamic base path."""
        if self._dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_sse_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_sse_path(self) -> str:
        """Return the path the SSE endpoint is served on."""
        fallback = normalize_url_path(self.base_path, self.sse_endpoint)
        try:
            return self.url_path(self.complete_sse_endpoint())
        except (DynamicPathConfigError, ValueError):
            return fallback

    def complete_message_endpoint(self) -> str:
        """Return the full message URL; not available with a dynamic base path."""
        if self._dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_message_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.message_endpoint)

    def complete_message_path(self) -> str:
        """Return the path the message endpoint is served on."""
        fallback = normalize_url_path(self.base_path, self.message_endpoint)
        try:
            return self.url_path(self.complete_message_endpoint())
        except (DynamicPathConfigError, ValueError):
            return fallback

    # Sessions

    def _lookup(self, session_id: str) -> Optional[SSESession]:
        with self._lock:
            return self._sessions.get(session_id)

    def send_event_to_session(self, session_id: str, event: Any) -> None:
        """Queue an event for one session; raise if it is unknown, closed or full."""
        session = self._lookup(session_id)
        if session is None:
            raise LookupError(f"session not found: {session_id}")
        data = _message_event(event)
        if session.closed:
            raise RuntimeError("session closed")
        try:
            session.event_queue.put_nowait(data)
        except queue.Full:
            raise RuntimeError("event queue full") from None

    @staticmethod
    def _enqueue(session: SSESession, data: str) -> bool:
        while not session.closed:
            try:
                session.event_queue.put(data, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _pump_notifications(self, session: SSESession, request: Any) -> None:
        while not session.closed and not request.disconnected.is_set():
            try:
                notification = session.notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                data = _message_event(notification)
            except (TypeError, ValueError):
                continue
            if not self._enqueue(session, data):
                return

    def _ping_loop(self, session: SSESession, request: Any) -> None:
        while not session.done.wait(self.keep_alive_interval):
            if request.disconnected.is_set():
                return
            ping = {"jsonrpc": JSONRPC_VERSION, "id": next(session.request_ids), "method": "ping"}
            if not self._enqueue(session, f"event: message\ndata:{_compact(ping)}\n\n"):
                return

    # Handlers

    def handle_sse(self, request: Any, response: Any) -> None:
        """Open an event stream for a new session and feed it until it ends."""
        if request.method != "GET":
            _plain_error(response, 405, "Method not allowed")
            return

        session = SSESession()
        context: dict = {}
        try:
            self.server.register_session(context, session)
        except Exception as exc:
            _plain_error(response, 500, f"Session registration failed: {exc}")
            return

        session_id = session.session_id
        with self._lock:
            self._sessions[session_id] = session
        try:
            response.start(200, dict(_SSE_HEADERS))
            threading.Thread(
                target=self._pump_notifications, args=(session, request), daemon=True
            ).start()
            if self.keep_alive:
                threading.Thread(target=self._ping_loop, args=(session, request), daemon=True).start()

            endpoint = self.message_endpoint_for_client(request, session_id)
            if self.append_query_to_message_endpoint and request.query:
                endpoint += "&" + request.query
            response.write(f"event: endpoint\ndata: {endpoint}\r\n\r\n")
            response.flush()

            while not session.closed:
                if request.disconnected.is_set():
                    break
                try:
                    event = session.event_queue.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                response.write(event)
                response.flush()
        except OSError:
            pass
        finally:
            session.close()
            with self._lock:
                if self._sessions.get(session_id) is session:
                    del self._sessions[session_id]
            self.server.unregister_session(context, session_id)

    def handle_message(self, request: Any, response: Any) -> None:
        """Accept one JSON-RPC message; its reply travels over the event stream."""
        if request.method != "POST":
            self._write_jsonrpc_error(response, None, ErrorCode.INVALID_REQUEST, "Method not allowed")
            return
        session_id = parse_qs(request.query).get("sessionId", [""])[0]
        if not session_id:
            self._write_jsonrpc_error(response, None, ErrorCode.INVALID_PARAMS, "Missing sessionId")
            return
        session = self._lookup(session_id)
        if session is None:
            self._write_jsonrpc_error(response, None, ErrorCode.INVALID_PARAMS, "Invalid session ID")
            return

        context = self.server.with_context({}, session)
        if self.context_func is not None:
            context = self.context_func(context, request)

        try:
            message, _ = json.JSONDecoder().raw_decode(request.body.decode("utf-8").lstrip())
        except ValueError:
            self._write_jsonrpc_error(response, None, ErrorCode.PARSE_ERROR, "Parse error")
            return

        response.start(202, {"Content-Length": "0"})
        response.flush()
        threading.Thread(
            target=self._process, args=(context, message, session), daemon=True
        ).start()

    def _process(self, context: dict, message: Any, session: SSESession) -> None:
        try:
            result = self.server.handle_message(context, message)
        except Exception:
            log.exception("message handling failed for session %s", session.session_id)
            return
        if result is None:
            return
        try:
            data = _message_event(result)
        except (TypeError, ValueError) as exc:
            log.error("failed to marshal response: %s", exc)
            data = _MARSHAL_ERROR_EVENT
        if session.closed:
            return
        try:
            session.event_queue.put_nowait(data)
        except queue.Full:
            log.warning("Event queue full for session %s", session.session_id)

    @staticmethod
    def _write_jsonrpc_error(response: Any, request_id: Any, code: int, message: str) -> None:
        body = _compact(create_error_response(request_id, code, message)) + "\n"
        response.start(
            400,
            {"Content-Type": "application/json", "Content-Length": str(len(body.encode("utf-8")))},
        )
        response.write(body)
        response.flush()

    def serve(self, request: Any, response: Any) -> None:
        """Route a request to the SSE or message handler by its path."""
        if self._dynamic_base_path is not None:
            _plain_error(response, 500, str(DynamicPathConfigError("serve")))
            return
        sse_path = self.complete_sse_path()
        if sse_path and request.path == sse_path:
            self.handle_sse(request, response)
            return
        message_path = self.complete_message_path()
        if message_path and request.path == message_path:
            self.handle_message(request, response)
            return
        _plain_error(response, 404, "404 page not found")

    # Serving

    def _bind(self, address: str) -> ThreadingHTTPServer:
        host, _, port = address.rpartition(":")
        with self._lock:
            if self._httpd is not None:
                raise RuntimeError("server already started")
            httpd = ThreadingHTTPServer((host or "0.0.0.0", int(port)), _Handler)
            httpd.sse_server = self  # type: ignore[attr-defined]
            self._httpd = httpd
        return httpd

    def start(self, address: str) -> None:
        """Listen on ``host:port`` and serve until shut down."""
        self._bind(address).serve_forever()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Close every session and stop the HTTP server."""
        with self._lock:
            httpd = self._httpd
            sessions = list(self._sessions.values())
            if httpd is not None:
                self._sessions.clear()
        if httpd is None:
            return
        for session in sessions:
            session.close()
        stopper = threading.Thread(target=httpd.shutdown, daemon=True)
        stopper.start()
        stopper.join(timeout)
        if stopper.is_alive():
            raise TimeoutError("server shutdown timed out")
        httpd.server_close()


def new_test_server(server: Any, **kwargs: Any) -> SSEServer:
    """Start an SSE server on a free local port; its base URL points at it."""
    sse = SSEServer(server, **kwargs)
    httpd = sse._bind("127.0.0.1:0")
    threading.Thread(
        target=httpd.serve_forever, kwargs={"poll_interval": _POLL_INTERVAL}, daemon=True
    ).start()
    host, port = httpd.server_address[:2]
    sse.base_url = f"http://{host}:{port}"
    return sse


class _SocketWatch:
    """Reports whether the peer of a socket has gone away."""

    def __init__(self, sock: socket.socket) -> None:
        self._sock = sock
        self._flag = threading.Event()

    def set(self) -> None:
        self._flag.set()

    def is_set(self) -> bool:
        if self._flag.is_set():
            return True
        try:
            readable, _, _ = select.select([self._sock], [], [], 0)
            if readable and not self._sock.recv(1, socket.MSG_PEEK):
                self._flag.set()
        except (OSError, ValueError):
            self._flag.set()
        return self._flag.is_set()


class _HTTPRequest:
    def __init__(self, handler: BaseHTTPRequestHandler) -> None:
        parts = urlsplit(handler.path)
        self.method = handler.command
        self.path = unquote(parts.path)
        self.query = parts.query
        self.headers = handler.headers
        self.disconnected = _SocketWatch(handler.connection)
        self._handler = handler
        self._body: Optional[bytes] = None

    @property
    def body(self) -> bytes:
        if self._body is None:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = 0
            self._body = self._handler.rfile.read(length) if length > 0 else b""
        return self._body


class _HTTPResponse:
    def __init__(self, handler: BaseHTTPRequestHandler, watch: _SocketWatch) -> None:
        self._handler = handler
        self._watch = watch

    def start(self, status: int, headers: Mapping[str, str]) -> None:
        self._handler.send_response(status)
        for name, value in headers.items():
            self._handler.send_header(name, str(value))
        self._handler.end_headers()

    def write(self, text: str) -> None:
        try:
            self._handler.wfile.write(text.encode("utf-8"))
        except OSError:
            self._watch.set()
            raise

    def flush(self) -> None:
        try:
            self._handler.wfile.flush()
        except OSError:
            self._watch.set()
            raise


class _Handler(BaseHTTPRequestHandler):
    server_version = "mcpserve"

    def _dispatch(self) -> None:
        request = _HTTPRequest(self)
        try:
            self.server.sse_server.serve(request, _HTTPResponse(self, request.disconnected))  # type: ignore[attr-defined]
        finally:
            self.close_connection = True

    do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _dispatch

    def log_message(self, format: str, *args: Any) -> None:
        log.debug("%s - %s", self.address_string(), format % args)