"""
Tests for the HTTP/SSE transport.

This test module validates:
- Session creation on initialize and the Mcp-Session-Id header
- Rejection of requests without a valid session
- 202 responses for notifications
- Session termination with DELETE
- The event stream (delivery, keepalive, single stream per session)
- /health and /exfil
- JSON-RPC error responses for unhandled exceptions
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from typing import Any

import pytest
from conftest import initialize_params
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.routing import Route
from starlette.testclient import TestClient

from mcp_pentest.dispatcher import RequestDispatcher
from mcp_pentest.protocol import INTERNAL_ERROR, METHOD_NOT_FOUND, PARSE_ERROR, SERVER_ERROR
from mcp_pentest.session import SessionManager
from mcp_pentest.transports.http import SESSION_HEADER, HTTPTransport, JSONRPCErrorMiddleware

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def transport(dispatcher: RequestDispatcher, session_manager: SessionManager) -> HTTPTransport:
    return HTTPTransport(dispatcher, session_manager, keepalive_interval=0.05)


@pytest.fixture
def client(transport: HTTPTransport) -> Iterator[TestClient]:
    with TestClient(transport.app) as test_client:
        yield test_client


def rpc(method: str, params: dict[str, Any] | None = None, request_id: Any = 1) -> dict[str, Any]:
    message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def initialize(client: TestClient) -> str:
    response = client.post("/mcp", json=rpc("initialize", initialize_params()))
    assert response.status_code == 200
    return response.headers[SESSION_HEADER]


# =============================================================================
# Tests for POST /mcp
# =============================================================================


class TestPost:
    """Tests for message submission."""

    def test_initialize_creates_session(
        self, client: TestClient, session_manager: SessionManager
    ) -> None:
        response = client.post("/mcp", json=rpc("initialize", initialize_params("2025-03-26")))

        assert response.status_code == 200
        session_id = response.headers[SESSION_HEADER]
        assert response.json()["result"]["protocolVersion"] == "2025-03-26"
        assert session_manager.get_session(session_id).is_active

    def test_request_with_session(self, client: TestClient) -> None:
        session_id = initialize(client)

        response = client.post(
            "/mcp",
            json=rpc("tools/call", {"name": "echo", "arguments": {"text": "x"}}, 2),
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 200
        assert response.json() == {
            "jsonrpc": "2.0",
            "id": 2,
            "result": {"content": [{"type": "text", "text": "x"}]},
        }
        assert response.headers[SESSION_HEADER] == session_id

    def test_tools_list(self, client: TestClient) -> None:
        session_id = initialize(client)

        response = client.post(
            "/mcp", json=rpc("tools/list", request_id=2), headers={SESSION_HEADER: session_id}
        )

        names = [tool["name"] for tool in response.json()["result"]["tools"]]
        assert names == ["echo", "fail", "sleep", "notify", "bad-result"]

    def test_unknown_tool_is_method_not_found(self, client: TestClient) -> None:
        session_id = initialize(client)

        response = client.post(
            "/mcp",
            json=rpc("tools/call", {"name": "missing", "arguments": {}}, 2),
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 200
        assert response.json()["error"]["code"] == METHOD_NOT_FOUND

    def test_notification_accepted(self, client: TestClient) -> None:
        session_id = initialize(client)

        response = client.post(
            "/mcp",
            json={"jsonrpc": "2.0", "method": "notifications/initialized"},
            headers={SESSION_HEADER: session_id},
        )

        assert response.status_code == 202
        assert response.content == b""

    def test_missing_session_header(self, client: TestClient) -> None:
        response = client.post("/mcp", json=rpc("tools/list"))

        assert response.status_code == 400
        body = response.json()
        assert body["id"] is None
        assert body["error"] == {
            "code": SERVER_ERROR,
            "message": "Bad Request: No valid session ID provided",
        }

    def test_unknown_session_header(self, client: TestClient) -> None:
        response = client.post(
            "/mcp", json=rpc("tools/list"), headers={SESSION_HEADER: "not-a-session"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == SERVER_ERROR

    def test_failed_initialize_leaves_no_session(
        self, client: TestClient, session_manager: SessionManager
    ) -> None:
        response = client.post("/mcp", json=rpc("initialize", {}))

        assert response.status_code == 400
        assert SESSION_HEADER not in response.headers
        assert len(session_manager) == 0

    def test_repeated_initialize_rejected(self, client: TestClient) -> None:
        session_id = initialize(client)

        response = client.post(
            "/mcp",
            json=rpc("initialize", initialize_params(), 2),
            headers={SESSION_HEADER: session_id},
        )

        assert response.json()["error"]["code"] == SERVER_ERROR

    def test_parse_error(self, client: TestClient) -> None:
        response = client.post(
            "/mcp", content=b"{oops", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == PARSE_ERROR

    def test_session_limit(self, dispatcher: RequestDispatcher) -> None:
        transport = HTTPTransport(dispatcher, SessionManager(max_sessions=1))
        with TestClient(transport.app) as client:
            initialize(client)
            response = client.post("/mcp", json=rpc("initialize", initialize_params()))

        assert response.status_code == 503
        assert response.json()["error"]["code"] == SERVER_ERROR

    def test_sessions_are_isolated(
        self, client: TestClient, session_manager: SessionManager
    ) -> None:
        first = initialize(client)
        second = initialize(client)

        assert first != second
        session_manager.get_session(first).audit.record("k", "file_read", {"content": "a"})
        assert len(session_manager.get_session(second).audit) == 0


# =============================================================================
# Tests for DELETE /mcp
# =============================================================================


class TestDelete:
    """Tests for session termination."""

    def test_delete_closes_session(
        self, client: TestClient, session_manager: SessionManager
    ) -> None:
        session_id = initialize(client)

        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 200
        assert response.json() == {"sessionId": session_id, "closed": True}
        assert session_id not in session_manager

    def test_delete_is_idempotent(self, client: TestClient) -> None:
        session_id = initialize(client)
        client.delete("/mcp", headers={SESSION_HEADER: session_id})

        response = client.delete("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 200
        assert response.json()["closed"] is False

    def test_requests_after_delete_rejected(self, client: TestClient) -> None:
        session_id = initialize(client)
        client.delete("/mcp", headers={SESSION_HEADER: session_id})

        response = client.post(
            "/mcp", json=rpc("ping", request_id=3), headers={SESSION_HEADER: session_id}
        )

        assert response.status_code == 400

    def test_stream_after_delete_not_found(self, client: TestClient) -> None:
        session_id = initialize(client)
        client.delete("/mcp", headers={SESSION_HEADER: session_id})

        response = client.get("/mcp", headers={SESSION_HEADER: session_id})

        assert response.status_code == 404

    def test_delete_without_header(self, client: TestClient) -> None:
        assert client.delete("/mcp").status_code == 400


# =============================================================================
# Tests for GET /mcp
# =============================================================================


async def open_stream(
    transport: HTTPTransport, session_id: str
) -> tuple[asyncio.Task[None], list[dict[str, Any]], asyncio.Event]:
    """Drive GET /mcp directly over ASGI so the stream can be read incrementally."""
    sent: list[dict[str, Any]] = []
    disconnect = asyncio.Event()
    request_sent = False

    async def receive() -> dict[str, Any]:
        nonlocal request_sent
        if not request_sent:
            request_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await disconnect.wait()
        return {"type": "http.disconnect"}

    async def send(message: dict[str, Any]) -> None:
        sent.append(message)

    scope = {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/mcp",
        "raw_path": b"/mcp",
        "root_path": "",
        "query_string": b"",
        "headers": [(SESSION_HEADER.lower().encode(), session_id.encode())],
        "client": ("testclient", 50000),
        "server": ("testserver", 80),
    }
    task = asyncio.create_task(transport.app(scope, receive, send))
    return task, sent, disconnect


def body_text(sent: list[dict[str, Any]]) -> str:
    return "".join(
        message.get("body", b"").decode()
        for message in sent
        if message["type"] == "http.response.body"
    )


async def wait_for_body(sent: list[dict[str, Any]], fragment: str) -> None:
    for _ in range(200):
        if fragment in body_text(sent):
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"{fragment!r} never appeared in {body_text(sent)!r}")


def status_of(sent: list[dict[str, Any]]) -> int:
    return next(m["status"] for m in sent if m["type"] == "http.response.start")


class TestEventStream:
    """Tests for the server-sent event stream."""

    @pytest.mark.asyncio
    async def test_stream_delivers_notifications(
        self, transport: HTTPTransport, active_session: Any, session_manager: SessionManager
    ) -> None:
        task, sent, _ = await open_stream(transport, active_session.id)
        await wait_for_body(sent, ": stream opened")

        active_session.send_notification("notifications/message", {"level": "info", "data": "x"})
        await wait_for_body(sent, "event: message")

        session_manager.close_session(active_session.id)
        await asyncio.wait_for(task, 2)

        assert status_of(sent) == 200
        headers = dict(next(m for m in sent if m["type"] == "http.response.start")["headers"])
        assert headers[b"content-type"].startswith(b"text/event-stream")
        data_line = next(
            line for line in body_text(sent).splitlines() if line.startswith("data: ")
        )
        assert json.loads(data_line[len("data: ") :]) == {
            "jsonrpc": "2.0",
            "method": "notifications/message",
            "params": {"level": "info", "data": "x"},
        }

    @pytest.mark.asyncio
    async def test_keepalive(
        self, transport: HTTPTransport, active_session: Any, session_manager: SessionManager
    ) -> None:
        task, sent, _ = await open_stream(transport, active_session.id)

        await wait_for_body(sent, ": keepalive")

        session_manager.close_session(active_session.id)
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_second_stream_conflicts(
        self, transport: HTTPTransport, active_session: Any, session_manager: SessionManager
    ) -> None:
        task, sent, _ = await open_stream(transport, active_session.id)
        await wait_for_body(sent, ": stream opened")

        second, second_sent, _ = await open_stream(transport, active_session.id)
        await asyncio.wait_for(second, 2)

        assert status_of(second_sent) == 409
        session_manager.close_session(active_session.id)
        await asyncio.wait_for(task, 2)

    @pytest.mark.asyncio
    async def test_stream_released_on_disconnect(
        self, transport: HTTPTransport, active_session: Any
    ) -> None:
        task, sent, disconnect = await open_stream(transport, active_session.id)
        await wait_for_body(sent, ": stream opened")

        disconnect.set()
        await asyncio.wait_for(task, 2)

        assert not active_session.stream_attached
        assert not active_session.is_closed

    def test_missing_header(self, client: TestClient) -> None:
        assert client.get("/mcp").status_code == 400

    def test_unknown_session(self, client: TestClient) -> None:
        assert client.get("/mcp", headers={SESSION_HEADER: "gone"}).status_code == 404

    def test_uninitialized_session(
        self, client: TestClient, session_manager: SessionManager
    ) -> None:
        session = session_manager.create_session()

        response = client.get("/mcp", headers={SESSION_HEADER: session.id})

        assert response.status_code == 400


# =============================================================================
# Tests for auxiliary endpoints
# =============================================================================


class TestAuxiliaryEndpoints:
    """Tests for /health and /exfil."""

    def test_health(self, client: TestClient, session_manager: SessionManager) -> None:
        session_id = initialize(client)
        session_manager.get_session(session_id).audit.record("k", "file_read")

        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["sessionCount"] == 1
        assert body["auditItemCount"] == 1
        assert "timestamp" in body

    def test_exfil(self, client: TestClient, session_manager: SessionManager) -> None:
        session_id = initialize(client)
        session_manager.get_session(session_id).audit.record(
            "/etc/hostname", "file_read", {"content": "pi"}
        )

        body = client.get("/exfil").json()

        assert body["totalItems"] == 1
        assert body["data"][session_id]["/etc/hostname"]["content"] == "pi"

    def test_cors_exposes_session_header(self, client: TestClient) -> None:
        response = client.post(
            "/mcp",
            json=rpc("initialize", initialize_params()),
            headers={"Origin": "http://example.com"},
        )

        assert SESSION_HEADER.lower() in response.headers["access-control-expose-headers"].lower()


# =============================================================================
# Tests for shutdown and error handling
# =============================================================================


class TestShutdownAndErrors:
    """Tests for close_sessions and JSONRPCErrorMiddleware."""

    def test_close_sessions_only_touches_http_sessions(
        self, client: TestClient, transport: HTTPTransport, session_manager: SessionManager
    ) -> None:
        other = session_manager.create_session()
        initialize(client)

        assert transport.close_sessions() == 1
        assert other.id in session_manager

    def test_close_sessions_forgets_sessions_closed_elsewhere(
        self, client: TestClient, transport: HTTPTransport, session_manager: SessionManager
    ) -> None:
        initialize(client)
        initialize(client)
        session_manager.close_all()

        assert transport.close_sessions() == 0
        assert transport._session_ids == set()

    def test_initialize_forgets_sessions_closed_elsewhere(
        self, client: TestClient, transport: HTTPTransport, session_manager: SessionManager
    ) -> None:
        stale = initialize(client)
        session_manager.close_session(stale)

        current = initialize(client)

        assert transport._session_ids == {current}

    def test_unhandled_exception_becomes_internal_error(self) -> None:
        async def explode(request: Request) -> None:
            raise RuntimeError("kaboom")

        app = Starlette(
            routes=[Route("/boom", explode)],
            middleware=[Middleware(JSONRPCErrorMiddleware)],
        )
        with TestClient(app) as client:
            response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == INTERNAL_ERROR
