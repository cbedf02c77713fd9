"""JSON-RPC and transport primitives shared by the MCP server transports."""

from __future__ import annotations

import enum
import json
import posixpath
from typing import Any

JSONRPC_VERSION = "2.0"


class LoggingLevel(str, enum.Enum):
    """Severity levels a client may request for log notifications."""

    DEBUG = "debug"
    INFO = "info"
    NOTICE = "notice"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"
    ALERT = "alert"
    EMERGENCY = "emergency"


class ErrorCode(enum.IntEnum):
    """Standard JSON-RPC error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class DynamicPathConfigError(Exception):
    """Raised when a static-path operation is used with a dynamic base path."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(
            f"{method} cannot be used with a dynamic base path; "
            "route requests to the SSE and message handlers directly"
        )


def create_error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    """Build a JSON-RPC error response object."""
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": int(code), "message": message},
    }


def _clean(path: str) -> str:
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def normalize_url_path(*args: str) -> str:
    """Join path elements, always with a leading slash and never a trailing one."""
    parts = [part for part in args if part]
    joined = _clean("/".join(parts)) if parts else ""
    if not joined.startswith("/"):
        joined = "/" + joined
    if len(joined) > 1 and joined.endswith("/"):
        joined = joined[:-1]
    return joined


def format_sse_event(event: str, data: Any) -> str:
    """Render one server-sent event frame; non-string data is JSON encoded."""
    if not isinstance(data, str):
        data = json.dumps(data, separators=(",", ":"))
    return f"event: {event}\ndata: {data}\n\n"