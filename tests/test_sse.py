import contextlib
import json
import queue
import threading
import urllib.request
from dataclasses import dataclass, field

import pytest

from mcpserve.protocol import DynamicPathConfigError, ErrorCode
from mcpserve.session import SSESession
from mcpserve.sse import SSEServer, new_test_server


class FakeMCPServer:
    def __init__(self, fail=False):
        self.fail = fail
        self.sessions = {}
        self.unregistered = []

    def register_session(self, context, session):
        if self.fail:
            raise RuntimeError("boom")
        self.sessions[session.session_id] = session

    def unregister_session(self, context, session_id):
        self.unregistered.append(session_id)

    def with_context(self, context, session):
        return {**context, "session": session}

    def handle_message(self, context, message):
        method = message.get("method")
        request_id = message.get("id")
        if method is None or request_id is None:
            return None
        if method == "initialize":
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"protocolVersion": "2024-11-05", "serverInfo": {"name": "test"}},
            }
        if method == "tools/call":
            text = context.get("test_value", "")
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {"content": [{"type": "text", "text": text}]},
            }
        if method == "broken":
            return {"jsonrpc": "2.0", "id": request_id, "result": object()}
        return {
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": -32601, "message": "Method not found"},
        }


@dataclass
class FakeRequest:
    method: str = "GET"
    path: str = "/sse"
    query: str = ""
    headers: dict = field(default_factory=dict)
    body: bytes = b""
    tenant: str = ""
    disconnected: threading.Event = field(default_factory=threading.Event)


class FakeResponse:
    def __init__(self):
        self.status = None
        self.headers = {}
        self.writes = queue.Queue()
        self.parts = []

    def start(self, status, headers):
        self.status = status
        self.headers = dict(headers)

    def write(self, text):
        self.parts.append(text)
        self.writes.put(text)

    def flush(self):
        pass

    @property
    def text(self):
        return "".join(self.parts)


INIT = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2024-11-05",
        "clientInfo": {"name": "test-client", "version": "1.0.0"},
    },
}


def data_of(frame):
    for line in frame.splitlines():
        if line.startswith("data:"):
            return line[len("data:"):].strip()
    raise AssertionError(f"no data in {frame!r}")


def read_event(stream):
    lines = []
    while True:
        line = stream.readline().decode()
        if not line:
            raise EOFError("stream closed")
        if line in ("\n", "\r\n"):
            if lines:
                return "".join(lines)
            continue
        lines.append(line)


def post(url, payload, headers=None):
    request = urllib.request.Request(
        url,
        data=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **(headers or {})},
        method="POST",
    )
    with urllib.request.urlopen(request, timeout=5) as response:
        return response.status


@contextlib.contextmanager
def running(server, **kwargs):
    sse = new_test_server(server, **kwargs)
    try:
        yield sse
    finally:
        sse.shutdown(timeout=2)


@contextlib.contextmanager
def open_stream(url):
    stream = urllib.request.urlopen(url, timeout=5)
    try:
        yield stream
    finally:
        stream.close()


def test_constructor_settings():
    sse = SSEServer(FakeMCPServer(), base_url="http://localhost:8080", base_path="/mcp")
    assert sse.base_url == "http://localhost:8080"
    assert sse.base_path == "/mcp"
    assert sse.sse_endpoint == "/sse"
    assert sse.message_endpoint == "/message"
    assert sse.use_full_url_for_message_endpoint is True
    assert sse.keep_alive is False
    assert sse.keep_alive_interval == 10.0


def test_options_are_kept_as_given():
    sse = SSEServer(
        FakeMCPServer(),
        base_path="/mcp-test",
        base_url="http://localhost:8080/test",
        message_endpoint="/message-test",
        use_full_url_for_message_endpoint=False,
        sse_endpoint="/sse-test",
    )
    assert sse.base_path == "/mcp-test"
    assert sse.base_url == "http://localhost:8080/test"
    assert sse.message_endpoint == "/message-test"
    assert sse.use_full_url_for_message_endpoint is False
    assert sse.sse_endpoint == "/sse-test"


def test_keep_alive_interval_enables_keep_alive():
    sse = SSEServer(FakeMCPServer(), keep_alive_interval=0.5)
    assert sse.keep_alive is True
    assert sse.keep_alive_interval == 0.5


def test_complete_endpoints_with_static_path():
    sse = SSEServer(FakeMCPServer(), base_url="http://localhost:8080", base_path="/mcp")
    assert sse.complete_sse_endpoint() == "http://localhost:8080/mcp/sse"
    assert sse.complete_sse_path() == "/mcp/sse"
    assert sse.complete_message_endpoint() == "http://localhost:8080/mcp/message"
    assert sse.complete_message_path() == "/mcp/message"


def test_complete_endpoints_fail_with_dynamic_path():
    sse = SSEServer(FakeMCPServer(), dynamic_base_path=lambda request, sid: "/foo")
    with pytest.raises(DynamicPathConfigError) as info:
        sse.complete_sse_endpoint()
    assert info.value.method == "complete_sse_endpoint"
    with pytest.raises(DynamicPathConfigError) as info:
        sse.complete_message_endpoint()
    assert info.value.method == "complete_message_endpoint"
    assert sse.complete_sse_path() == sse.base_path + sse.sse_endpoint
    assert sse.complete_message_path() == sse.base_path + sse.message_endpoint


def test_serve_refuses_dynamic_base_path():
    sse = SSEServer(FakeMCPServer(), dynamic_base_path=lambda request, sid: "/foo")
    response = FakeResponse()
    sse.serve(FakeRequest(path="/foo/sse"), response)
    assert response.status == 500
    assert "serve cannot be used with a dynamic base path" in response.text


def test_serve_unknown_path_is_not_found():
    sse = SSEServer(FakeMCPServer(), base_url="http://localhost:8080")
    response = FakeResponse()
    sse.serve(FakeRequest(path="/unknown"), response)
    assert response.status == 404


def test_serve_with_base_path_does_not_match_root_sse():
    sse = SSEServer(FakeMCPServer(), base_path="/mcp")
    response = FakeResponse()
    sse.serve(FakeRequest(path="/sse"), response)
    assert response.status == 404


def test_message_endpoint_for_client_variants():
    full = SSEServer(FakeMCPServer(), base_url="http://localhost:8080", base_path="/mcp")
    assert (
        full.message_endpoint_for_client(FakeRequest(), "abc")
        == "http://localhost:8080/mcp/message?sessionId=abc"
    )
    relative = SSEServer(
        FakeMCPServer(),
        base_url="http://localhost:8080",
        base_path="/mcp",
        use_full_url_for_message_endpoint=False,
    )
    assert relative.message_endpoint_for_client(FakeRequest(), "abc") == "/mcp/message?sessionId=abc"
    dynamic = SSEServer(
        FakeMCPServer(), dynamic_base_path=lambda request, sid: "/mcp/" + request.tenant
    )
    assert (
        dynamic.message_endpoint_for_client(FakeRequest(tenant="tenant123"), "abc")
        == "/mcp/tenant123/message?sessionId=abc"
    )


def test_url_path():
    sse = SSEServer(FakeMCPServer())
    assert sse.url_path("http://localhost:8080/mcp/sse") == "/mcp/sse"


@pytest.mark.parametrize(
    "request_obj, code, message",
    [
        (FakeRequest(method="GET", path="/message"), ErrorCode.INVALID_REQUEST, "Method not allowed"),
        (FakeRequest(method="POST", path="/message"), ErrorCode.INVALID_PARAMS, "Missing sessionId"),
        (
            FakeRequest(method="POST", path="/message", query="sessionId=missing"),
            ErrorCode.INVALID_PARAMS,
            "Invalid session ID",
        ),
    ],
)
def test_handle_message_errors(request_obj, code, message):
    sse = SSEServer(FakeMCPServer())
    response = FakeResponse()
    sse.handle_message(request_obj, response)
    assert response.status == 400
    assert response.headers["Content-Type"] == "application/json"
    body = json.loads(response.text)
    assert body["id"] is None
    assert body["error"] == {"code": int(code), "message": message}


def test_handle_sse_rejects_post():
    sse = SSEServer(FakeMCPServer())
    response = FakeResponse()
    sse.handle_sse(FakeRequest(method="POST"), response)
    assert response.status == 405


def test_handle_sse_registration_failure():
    sse = SSEServer(FakeMCPServer(fail=True))
    response = FakeResponse()
    sse.handle_sse(FakeRequest(), response)
    assert response.status == 500
    assert "Session registration failed: boom" in response.text


def test_send_event_to_unknown_session():
    sse = SSEServer(FakeMCPServer())
    with pytest.raises(LookupError, match="session not found: nope"):
        sse.send_event_to_session("nope", {"a": 1})


def test_handlers_without_network():
    fake = FakeMCPServer()
    sse = SSEServer(fake)
    sse_request = FakeRequest()
    sse_response = FakeResponse()
    worker = threading.Thread(target=sse.handle_sse, args=(sse_request, sse_response), daemon=True)
    worker.start()

    endpoint_event = sse_response.writes.get(timeout=2)
    assert endpoint_event.startswith("event: endpoint\ndata: /message?sessionId=")
    assert sse_response.status == 200
    assert sse_response.headers["Content-Type"] == "text/event-stream"
    (session_id,) = fake.sessions
    assert isinstance(fake.sessions[session_id], SSESession)
    assert endpoint_event.rstrip().endswith(session_id)

    message_response = FakeResponse()
    sse.handle_message(
        FakeRequest(method="POST", path="/message", query=f"sessionId={session_id}",
                    body=json.dumps(INIT).encode()),
        message_response,
    )
    assert message_response.status == 202
    reply = sse_response.writes.get(timeout=2)
    assert reply.startswith("event: message\ndata: ")
    assert json.loads(data_of(reply))["id"] == 1

    parse_response = FakeResponse()
    sse.handle_message(
        FakeRequest(method="POST", path="/message", query=f"sessionId={session_id}", body=b"{not json"),
        parse_response,
    )
    assert parse_response.status == 400
    assert json.loads(parse_response.text)["error"]["code"] == int(ErrorCode.PARSE_ERROR)

    sse.send_event_to_session(session_id, {"hello": "world"})
    assert json.loads(data_of(sse_response.writes.get(timeout=2))) == {"hello": "world"}

    sse_request.disconnected.set()
    worker.join(timeout=2)
    assert not worker.is_alive()
    assert fake.sessions[session_id].closed
    assert fake.unregistered == [session_id]
    with pytest.raises(LookupError):
        sse.send_event_to_session(session_id, {})


def test_send_and_receive_over_http():
    fake = FakeMCPServer()
    with running(fake) as sse, open_stream(sse.base_url + "/sse") as stream:
        endpoint_event = read_event(stream)
        assert "event: endpoint" in endpoint_event
        message_url = data_of(endpoint_event)
        assert message_url.startswith(sse.base_url + "/message?sessionId=")
        assert post(message_url, INIT) == 202
        reply = json.loads(data_of(read_event(stream)))
        assert reply["jsonrpc"] == "2.0"
        assert reply["id"] == 1
        assert "error" not in reply


def test_multiple_sessions():
    fake = FakeMCPServer()
    with running(fake) as sse:
        seen = set()
        for number in range(3):
            with open_stream(sse.base_url + "/sse") as stream:
                message_url = data_of(read_event(stream))
                seen.add(message_url)
                assert post(message_url, {**INIT, "id": number}) == 202
                assert json.loads(data_of(read_event(stream)))["id"] == number
        assert len(seen) == 3


def test_custom_context_function():
    def context_func(context, request):
        return {**context, "test_value": request.headers.get("X-Test-Header", "")}

    with running(FakeMCPServer(), context_func=context_func) as sse, open_stream(
        sse.base_url + "/sse"
    ) as stream:
        message_url = data_of(read_event(stream))
        assert post(message_url, INIT) == 202
        assert json.loads(data_of(read_event(stream)))["id"] == 1
        call = {"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "test_tool"}}
        assert post(message_url, call, {"X-Test-Header": "test_value"}) == 202
        reply = json.loads(data_of(read_event(stream)))
        assert reply["id"] == 2
        assert reply["result"]["content"][0]["text"] == "test_value"
        assert "error" not in reply


def test_append_query_to_message_endpoint():
    with running(FakeMCPServer(), append_query_to_message_endpoint=True) as sse, open_stream(
        sse.base_url + "/sse?tenant=acme"
    ) as stream:
        message_url = data_of(read_event(stream))
        assert message_url.endswith("&tenant=acme")
        assert post(message_url, INIT) == 202


def test_keep_alive_ping():
    with running(FakeMCPServer(), keep_alive=True, keep_alive_interval=0.05) as sse, open_stream(
        sse.base_url + "/sse"
    ) as stream:
        message_url = data_of(read_event(stream))
        frame = read_event(stream)
        assert "event: message" in frame
        assert "data:{" in frame
        ping = json.loads(data_of(frame))
        assert ping["method"] == "ping"
        assert ping["id"] == 1
        assert post(message_url, {"jsonrpc": "2.0", "id": ping["id"], "result": {}}) == 202


def test_unserialisable_response_sends_generic_error():
    with running(FakeMCPServer()) as sse, open_stream(sse.base_url + "/sse") as stream:
        message_url = data_of(read_event(stream))
        assert post(message_url, {"jsonrpc": "2.0", "id": 7, "method": "broken"}) == 202
        assert '"id": null' in read_event(stream)


def test_send_event_to_live_session():
    fake = FakeMCPServer()
    with running(fake) as sse, open_stream(sse.base_url + "/sse") as stream:
        read_event(stream)
        (session_id,) = fake.sessions
        sse.send_event_to_session(session_id, {"hello": "world"})
        assert json.loads(data_of(read_event(stream))) == {"hello": "world"}


def test_shutdown_closes_streams_and_listener():
    sse = new_test_server(FakeMCPServer())
    with open_stream(sse.base_url + "/sse") as stream:
        read_event(stream)
        sse.shutdown(timeout=2)
        assert stream.readline() == b""
    with pytest.raises(OSError):
        urllib.request.urlopen(sse.base_url + "/sse", timeout=2)


def test_start_twice_is_refused():
    with running(FakeMCPServer()) as sse:
        with pytest.raises(RuntimeError, match="already started"):
            sse.start("127.0.0.1:0")


def test_shutdown_without_start_returns():
    sse = SSEServer(FakeMCPServer())
    sse.shutdown(timeout=1)
    assert sse.complete_sse_path() == "/sse"