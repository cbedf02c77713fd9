"""Standard input/output transport for an MCP server.

Each line read from the input is one JSON-RPC message; every reply and every
notification is written as one line of JSON.  The wrapped MCP server must
provide ``register_session(context, session)``,
``unregister_session(context, session_id)``, ``with_context(context, session)``
and ``handle_message(context, message)``; contexts are plain dictionaries.
"""

from __future__ import annotations

import io
import json
import logging
import queue
import signal
import sys
import threading
from typing import Any, Callable, Optional

from mcpserve.protocol import ErrorCode, create_error_response
from mcpserve.session import StdioSession

_POLL_INTERVAL = 0.05
_LINE = "line"
_EOF = "eof"
_ERROR = "error"

ContextFunc = Callable[[dict], dict]


def _is_binary(stream: Any) -> bool:
    return isinstance(stream, (io.RawIOBase, io.BufferedIOBase))


class StdioServer:
    """Serves one MCP client over a pair of line-oriented streams."""

    def __init__(
        self,
        server: Any,
        *,
        error_logger: Optional[logging.Logger] = None,
        context_func: Optional[ContextFunc] = None,
    ) -> None:
        self.server = server
        self.error_logger = error_logger or logging.getLogger(__name__)
        self.context_func = context_func
        self.session = StdioSession()
        self._write_lock = threading.Lock()

    def listen(self, stdin: Any, stdout: Any, stop: Optional[threading.Event] = None) -> None:
        """Read messages from ``stdin`` and answer on ``stdout``.

        Returns at end of input or once ``stop`` is set; raises on read,
        processing or write failures.
        """
        if stop is None:
            stop = threading.Event()
        try:
            self.server.register_session({}, self.session)
        except Exception as exc:
            raise RuntimeError(f"register session: {exc}") from exc

        finished = threading.Event()
        try:
            context = self.server.with_context({}, self.session)
            if self.context_func is not None:
                context = self.context_func(context)
            threading.Thread(
                target=self._forward_notifications,
                args=(stdout, stop, finished),
                daemon=True,
            ).start()
            self._process_input(context, stdin, stdout, stop, finished)
        finally:
            finished.set()
            self.server.unregister_session({}, self.session.session_id)

    def process_message(self, context: dict, line: str, writer: Any) -> None:
        """Handle one input line and write the reply, if there is one."""
        try:
            message = json.loads(line)
        except ValueError:
            self._write_response(
                create_error_response(None, ErrorCode.PARSE_ERROR, "Parse error"), writer
            )
            return

        response = self.server.handle_message(context, message)
        if response is None:
            return
        try:
            self._write_response(response, writer)
        except OSError as exc:
            raise OSError(f"failed to write response: {exc}") from exc

    def _process_input(
        self,
        context: dict,
        stdin: Any,
        stdout: Any,
        stop: threading.Event,
        finished: threading.Event,
    ) -> None:
        lines: "queue.Queue[tuple[str, Any]]" = queue.Queue(maxsize=1)
        threading.Thread(
            target=self._read_lines, args=(stdin, lines, finished), daemon=True
        ).start()

        while not stop.is_set():
            try:
                kind, value = lines.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if kind == _EOF:
                return
            if kind == _ERROR:
                self.error_logger.error("Error reading input: %s", value)
                raise value
            try:
                self.process_message(context, value, stdout)
            except Exception as exc:
                self.error_logger.error("Error handling message: %s", exc)
                raise

    @staticmethod
    def _read_lines(
        stdin: Any, lines: "queue.Queue[tuple[str, Any]]", finished: threading.Event
    ) -> None:
        def deliver(item: tuple[str, Any]) -> bool:
            while not finished.is_set():
                try:
                    lines.put(item, timeout=_POLL_INTERVAL)
                    return True
                except queue.Full:
                    continue
            return False

        while not finished.is_set():
            try:
                raw = stdin.readline()
            except Exception as exc:
                deliver((_ERROR, exc))
                return
            line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
            # A final line without its newline is not a complete message.
            if not line.endswith("\n"):
                deliver((_EOF, None))
                return
            if not deliver((_LINE, line)):
                return

    def _forward_notifications(
        self, stdout: Any, stop: threading.Event, finished: threading.Event
    ) -> None:
        while not stop.is_set() and not finished.is_set():
            try:
                notification = self.session.notifications.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                self._write_response(notification, stdout)
            except Exception as exc:
                self.error_logger.error("Error writing notification: %s", exc)

    def _write_response(self, response: Any, writer: Any) -> None:
        text = json.dumps(response, separators=(",", ":")) + "\n"
        with self._write_lock:
            writer.write(text.encode("utf-8") if _is_binary(writer) else text)
            writer.flush()


def serve_stdio(
    server: Any,
    error_logger: Optional[logging.Logger] = None,
    context_func: Optional[ContextFunc] = None,
) -> None:
    """Serve ``server`` on the process's standard streams until EOF or SIGINT/SIGTERM."""
    stdio = StdioServer(server, error_logger=error_logger, context_func=context_func)
    stop = threading.Event()
    previous: dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for signum in (signal.SIGTERM, signal.SIGINT):
            previous[signum] = signal.signal(signum, lambda *_: stop.set())
    try:
        stdio.listen(sys.stdin, sys.stdout, stop)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)