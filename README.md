# mcpserve

Transports for Model Context Protocol (MCP) servers. An object that
handles JSON-RPC messages can be exposed to clients over Server-Sent
Events on HTTP (`mcpserve.sse`) or over a pair of line-oriented streams
such as standard input and output (`mcpserve.stdio`).

The package uses only the standard library.

## What the package does not do

It contains no MCP server logic: no `initialize` handling, no tools,
resources or prompts, and no registry of them. You supply that object
yourself. Both transports expect it to provide:

- `register_session(context, session)` — may raise to refuse the session;
- `unregister_session(context, session_id)`;
- `with_context(context, session)` — returns the context dictionary used
  for that session's messages;
- `handle_message(context, message)` — takes the decoded JSON message and
  returns a JSON-serialisable reply, or `None` when there is nothing to
  send back (for notifications).

Contexts are plain dictionaries. The package also installs no command-line
program; call `serve_stdio` or `SSEServer.start` from your own code.

## Server-Sent Events

```python
from mcpserve.sse import SSEServer

class EchoServer:
    def register_session(self, context, session): pass
    def unregister_session(self, context, session_id): pass
    def with_context(self, context, session): return {**context, "session": session}
    def handle_message(self, context, message):
        if "id" not in message:
            return None
        return {"jsonrpc": "2.0", "id": message["id"], "result": message.get("params", {})}

sse = SSEServer(EchoServer(), base_url="http://localhost:8080", base_path="/mcp")
sse.start("127.0.0.1:8080")   # blocks; call sse.shutdown() from another thread
```

A client issues `GET` on the SSE path (`/mcp/sse` above) and first receives
an `endpoint` event naming the URL to post messages to, with a `sessionId`
query parameter. Each `POST` to that URL is answered at once with
`202 Accepted`; the reply from `handle_message` arrives later as a
`message` event on the stream. A `POST` with a wrong method, a missing or
unknown `sessionId`, or a body that is not JSON gets `400` with a JSON-RPC
error object. Unknown paths get `404`.

Constructor keyword options:

| option | default | effect |
| --- | --- | --- |
| `base_url` | `""` | prefix for full endpoint URLs |
| `base_path` | none | static path prefix, normalised |
| `sse_endpoint` | `"/sse"` | path of the event stream |
| `message_endpoint` | `"/message"` | path messages are posted to |
| `use_full_url_for_message_endpoint` | `True` | announce `base_url` + path rather than the path alone |
| `append_query_to_message_endpoint` | `False` | carry the stream request's query string over to the announced endpoint |
| `keep_alive` | off | send `ping` requests on the stream |
| `keep_alive_interval` | `10.0` seconds | ping interval; giving it turns keep-alive on unless `keep_alive` says otherwise |
| `context_func` | none | `f(context, request) -> context`, applied to each posted message |
| `dynamic_base_path` | none | `f(request, session_id) -> path`, computing the base path per request |

Methods:

- `start(address)` listens on `host:port` and serves until `shutdown(timeout)`,
  which closes every session and raises `TimeoutError` if stopping takes
  longer than `timeout` seconds.
- `serve(request, response)` routes by path; `handle_sse` and
  `handle_message` can be mounted directly behind your own router. The
  request object needs `method`, `path`, `query`, `headers`, `body` and
  `disconnected` (with `is_set()`); the response needs
  `start(status, headers)`, `write(text)` and `flush()`.
- `complete_sse_endpoint()`, `complete_message_endpoint()` give full URLs;
  with `dynamic_base_path` they raise
  `mcpserve.protocol.DynamicPathConfigError`, and `serve` answers `500`.
  `complete_sse_path()` and `complete_message_path()` always return a path.
- `message_endpoint_for_client(request, session_id)` gives the URL that is
  announced to a client.
- `send_event_to_session(session_id, event)` queues an event for one client;
  it raises `LookupError` for an unknown session and `RuntimeError` when
  the session is closed or its queue is full.
- `url_path(value)` returns the path component of a URL.

`new_test_server(server, **kwargs)` builds an `SSEServer`, starts it on a
free port on `127.0.0.1` in a background thread, and sets its `base_url`.

## Standard input and output

```python
from mcpserve.stdio import serve_stdio

serve_stdio(EchoServer())
```

`StdioServer(server, error_logger=None, context_func=None)` reads one
JSON message per line and writes each reply as one line of JSON. A line
that is not valid JSON is answered with a `Parse error` response
(code `-32700`). A final line without a newline ends the input.
`listen(stdin, stdout, stop=None)` returns at end of input or once the
`stop` event is set, and raises on read, processing or write errors.
Notifications put on `stdio_server.session.notifications` are written as
they arrive. Text and binary streams both work.

`serve_stdio(server, error_logger, context_func)` runs on `sys.stdin` and
`sys.stdout` and stops on SIGINT or SIGTERM.

## Helpers

`mcpserve.protocol` holds the shared pieces: the `LoggingLevel` and
`ErrorCode` enumerations, `DynamicPathConfigError`,
`create_error_response`, `format_sse_event`, and `normalize_url_path`,
which joins path segments, resolves `.` and `..`, and always yields a
path with a leading slash and no trailing slash:

```python
from mcpserve.protocol import normalize_url_path

normalize_url_path("/mcp/", "/api//", "message/")  # "/mcp/api/message"
```

`mcpserve.session` holds `SSESession`, `StdioSession` and `ServerTool`.
Sessions start with log level `ERROR`; `SSESession` can also hold
per-session tools through `set_session_tools` and `session_tools`.

## Running the tests

```
pip install -e ".[test]"
pytest
```