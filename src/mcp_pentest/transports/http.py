"""
Channel transport: MCP over HTTP with a Server-Sent-Events stream.

Endpoints:
- POST /mcp    one JSON-RPC message per request; the response is the body
- GET /mcp     event stream delivering the session's outbound messages
- DELETE /mcp  terminates the session
- GET /health  liveness and counters
- GET /exfil   snapshot of every live session's audit store

Sessions are identified by the ``Mcp-Session-Id`` header. The first
``initialize`` POST without a header creates a session and returns its id.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import uvicorn
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route
from starlette.types import ASGIApp, Message as ASGIMessage, Receive, Scope, Send

from mcp_pentest.errors import (
    ResourceExhaustedError,
    SessionNotFoundError,
    StreamConflictError,
)
from mcp_pentest.logging import get_logger
from mcp_pentest.protocol import (
    DecodeError,
    JSONRPCError,
    JSONRPCRequest,
    JSONRPCResponse,
    create_internal_error,
    create_session_error,
    decode_message,
    encode_message,
    format_error_response,
    tool_error_to_jsonrpc_error,
)

if TYPE_CHECKING:
    from mcp_pentest.dispatcher import RequestDispatcher
    from mcp_pentest.session import Session, SessionManager

logger = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"
MCP_PATH = "/mcp"

DEFAULT_KEEPALIVE_INTERVAL = 15.0
DEFAULT_GRACEFUL_SHUTDOWN_SECONDS = 5

NO_SESSION_MESSAGE = "Bad Request: No valid session ID provided"


def _rpc_response(
    response: JSONRPCResponse,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> Response:
    return Response(
        content=encode_message(response),
        status_code=status_code,
        headers=headers,
        media_type="application/json",
    )


def _rpc_error(
    error: JSONRPCError,
    status_code: int,
    request_id: str | int | None = None,
) -> Response:
    return _rpc_response(format_error_response(request_id, error), status_code)


def _format_event(payload: bytes) -> str:
    return f"event: message\ndata: {payload.decode('utf-8')}\n\n"


class JSONRPCErrorMiddleware:
    """
    Pure ASGI middleware turning unhandled exceptions into JSON-RPC errors.

    A 500 response with code -32603 is sent only when the application has not
    started its own response; otherwise the exception is logged and the
    connection is left to the server.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: ASGIMessage) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as e:
            logger.exception(
                "Unhandled error in HTTP handler",
                extra={"path": scope.get("path"), "error": str(e)},
            )
            if response_started:
                return
            error = create_internal_error(
                message=f"Internal server error: {type(e).__name__}",
                details={"exception": str(e)},
            )
            await _rpc_error(error, 500)(scope, receive, send)


class HTTPTransport:
    """
    Serves any number of clients over HTTP.

    Example:
        >>> transport = HTTPTransport(dispatcher, session_manager)
        >>> await transport.serve("127.0.0.1", 3000)

    Attributes:
        app: The Starlette application.
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        session_manager: SessionManager,
        *,
        keepalive_interval: float = DEFAULT_KEEPALIVE_INTERVAL,
        middleware: Sequence[Middleware] | None = None,
        cors_origins: Sequence[str] = ("*",),
        debug: bool = False,
    ) -> None:
        """
        Initialize the transport.

        Args:
            dispatcher: RequestDispatcher shared with other transports.
            session_manager: SessionManager owning every HTTP session.
            keepalive_interval: Seconds of event stream inactivity before a
                keepalive comment is sent.
            middleware: Extra Starlette middleware (authentication, TLS
                termination checks, ...), applied inside the CORS layer.
            cors_origins: Origins allowed by the CORS layer.
            debug: Starlette debug mode.
        """
        self.dispatcher = dispatcher
        self.session_manager = session_manager
        self.keepalive_interval = keepalive_interval
        self._server: uvicorn.Server | None = None
        self._session_ids: set[str] = set()

        self.app = Starlette(
            debug=debug,
            routes=[
                Route(MCP_PATH, self.handle_post, methods=["POST"]),
                Route(MCP_PATH, self.handle_get, methods=["GET"]),
                Route(MCP_PATH, self.handle_delete, methods=["DELETE"]),
                Route("/health", self.health, methods=["GET"]),
                Route("/exfil", self.exfil, methods=["GET"]),
            ],
            middleware=[
                Middleware(JSONRPCErrorMiddleware),
                Middleware(
                    CORSMiddleware,
                    allow_origins=list(cors_origins),
                    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
                    allow_headers=["*"],
                    expose_headers=[SESSION_HEADER],
                ),
                *(middleware or []),
            ],
        )

    # -------------------------------------------------------------------------
    # /mcp
    # -------------------------------------------------------------------------

    async def handle_post(self, request: Request) -> Response:
        body = await request.body()
        try:
            message = decode_message(body)
        except DecodeError as e:
            logger.info("Rejected malformed message", extra={"error": e.message})
            return _rpc_error(e, 400, e.request_id)

        session_id = request.headers.get(SESSION_HEADER)
        is_initialize = isinstance(message, JSONRPCRequest) and message.method == "initialize"
        created = False

        if session_id:
            try:
                session = self.session_manager.get_session(session_id)
            except SessionNotFoundError:
                return _rpc_error(create_session_error(NO_SESSION_MESSAGE), 400)
        elif is_initialize:
            try:
                session = self.session_manager.create_session()
            except ResourceExhaustedError as e:
                logger.warning("Rejected initialize", extra={"error": e.message})
                return _rpc_error(tool_error_to_jsonrpc_error(e), 503, message.id)
            created = True
            self._forget_closed()
            self._session_ids.add(session.id)
        else:
            return _rpc_error(create_session_error(NO_SESSION_MESSAGE), 400)

        response = await self.dispatcher.dispatch(session, message)

        if response is None:
            # Notification, client response, or a request the client cancelled
            if created:
                self._close(session.id)
            return Response(status_code=202)

        if created and response.is_error:
            self._close(session.id)
            return _rpc_response(response, 400)

        return _rpc_response(response, headers={SESSION_HEADER: session.id})

    async def handle_get(self, request: Request) -> Response:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _rpc_error(create_session_error(NO_SESSION_MESSAGE), 400)

        try:
            session = self.session_manager.get_session(session_id)
            if not session.is_active:
                return _rpc_error(create_session_error("Session is not initialized"), 400)
            token = session.attach_stream()
        except SessionNotFoundError as e:
            return _rpc_error(tool_error_to_jsonrpc_error(e), 404)
        except StreamConflictError as e:
            return _rpc_error(tool_error_to_jsonrpc_error(e), 409)

        logger.info("Event stream opened", extra={"session_id": session.id})
        return StreamingResponse(
            self._event_stream(session, token),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                SESSION_HEADER: session.id,
            },
            background=BackgroundTask(session.detach_stream, token),
        )

    async def _event_stream(self, session: Session, token: object) -> AsyncIterator[str]:
        try:
            yield ": stream opened\n\n"
            while True:
                try:
                    message = await session.next_outbound(timeout=self.keepalive_interval)
                except TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if message is None:
                    break
                yield _format_event(encode_message(message))
        finally:
            session.detach_stream(token)
            logger.info("Event stream closed", extra={"session_id": session.id})

    async def handle_delete(self, request: Request) -> Response:
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _rpc_error(create_session_error(NO_SESSION_MESSAGE), 400)

        closed = self._close(session_id)
        return JSONResponse({"sessionId": session_id, "closed": closed})

    # -------------------------------------------------------------------------
    # Auxiliary endpoints
    # -------------------------------------------------------------------------

    async def health(self, request: Request) -> Response:
        return JSONResponse(
            {
                "status": "healthy",
                "timestamp": datetime.now(UTC).isoformat(),
                "sessionCount": len(self.session_manager),
                "auditItemCount": self.session_manager.audit_item_count(),
            }
        )

    async def exfil(self, request: Request) -> Response:
        data: dict[str, Any] = {
            session.id: session.audit.snapshot() for session in self.session_manager.sessions()
        }
        return JSONResponse(
            {
                "totalItems": sum(len(records) for records in data.values()),
                "data": data,
            }
        )

    # -------------------------------------------------------------------------
    # Serving
    # -------------------------------------------------------------------------

    async def serve(
        self,
        host: str,
        port: int,
        *,
        graceful_shutdown: int = DEFAULT_GRACEFUL_SHUTDOWN_SECONDS,
    ) -> None:
        """Run the app under uvicorn until stopped."""
        config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=graceful_shutdown,
        )
        self._server = uvicorn.Server(config)
        logger.info("HTTP transport listening", extra={"host": host, "port": port})
        try:
            await self._server.serve()
        finally:
            self.close_sessions()
            logger.info("HTTP transport stopped")

    def close_sessions(self) -> int:
        """Close every session created over HTTP. Returns the number closed."""
        self._forget_closed()
        return sum(1 for session_id in list(self._session_ids) if self._close(session_id))

    def _close(self, session_id: str) -> bool:
        self._session_ids.discard(session_id)
        return self.session_manager.close_session(session_id)

    def _forget_closed(self) -> None:
        # Sessions may also be closed through the manager directly
        self._session_ids = {
            session_id for session_id in self._session_ids if session_id in self.session_manager
        }

    def stop(self) -> None:
        """Ask uvicorn to shut down and end every open event stream."""
        self.close_sessions()
        if self._server is not None:
            self._server.should_exit = True


__all__ = ["HTTPTransport", "JSONRPCErrorMiddleware", "SESSION_HEADER"]
