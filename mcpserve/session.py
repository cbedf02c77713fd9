"""Client sessions held by the SSE and stdio transports."""

from __future__ import annotations

import itertools
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Optional

from mcpserve.protocol import LoggingLevel

QUEUE_SIZE = 100


@dataclass
class ServerTool:
    """A tool description paired with the callable that serves it."""

    tool: dict[str, Any]
    handler: Optional[Callable[..., Any]] = None


@dataclass(eq=False)
class SSESession:
    """One live server-sent-events connection."""

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_queue: "queue.Queue[str]" = field(
        default_factory=lambda: queue.Queue(maxsize=QUEUE_SIZE), repr=False
    )
    notifications: "queue.Queue[Any]" = field(
        default_factory=lambda: queue.Queue(maxsize=QUEUE_SIZE), repr=False
    )
    done: threading.Event = field(default_factory=threading.Event, repr=False)
    request_ids: Iterator[int] = field(default_factory=lambda: itertools.count(1), repr=False)
    initialized: bool = False
    log_level: LoggingLevel = LoggingLevel.ERROR
    _tools: dict[str, ServerTool] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def initialize(self) -> None:
        """Mark the session initialised and reset the log level to the default."""
        self.log_level = LoggingLevel.ERROR
        self.initialized = True

    def session_tools(self) -> dict[str, ServerTool]:
        """Return a copy of the tools registered for this session."""
        with self._lock:
            return dict(self._tools)

    def set_session_tools(self, tools: Mapping[str, ServerTool]) -> None:
        """Replace every session tool with the given ones."""
        with self._lock:
            self._tools = dict(tools)

    def close(self) -> None:
        """Signal that the connection is finished."""
        self.done.set()

    @property
    def closed(self) -> bool:
        return self.done.is_set()


@dataclass(eq=False)
class StdioSession:
    """The single session of a standard-input/output server."""

    session_id: str = "stdio"
    notifications: "queue.Queue[Any]" = field(
        default_factory=lambda: queue.Queue(maxsize=QUEUE_SIZE), repr=False
    )
    initialized: bool = False
    log_level: LoggingLevel = LoggingLevel.ERROR

    def initialize(self) -> None:
        """Mark the session initialised and reset the log level to the default."""
        self.log_level = LoggingLevel.ERROR
        self.initialized = True