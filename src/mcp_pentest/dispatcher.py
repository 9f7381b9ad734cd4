"""
Request dispatch for the MCP pentest server.

The RequestDispatcher takes one decoded message and the session it arrived
on, resolves the method (built-in protocol method or capability lookup),
runs it, and produces the terminal response.

Two error channels are kept apart:
- Malformed or unroutable requests (unknown method/tool, bad params, wrong
  session state) produce JSON-RPC error responses.
- A well-formed ``tools/call`` whose handler fails or times out produces a
  successful response whose result carries ``isError: true``.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from mcp_pentest.context import ToolContext
from mcp_pentest.errors import (
    InternalError,
    InvalidArgumentError,
    MethodNotFoundError,
    ToolError,
)
from mcp_pentest.logging import get_logger
from mcp_pentest.protocol import (
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    Message,
    create_internal_error,
    format_error_response,
    format_success_response,
    tool_error_to_jsonrpc_error,
)

if TYPE_CHECKING:
    from mcp_pentest.config import AppConfig
    from mcp_pentest.registry import CapabilityRegistry, ToolRegistration
    from mcp_pentest.session import Session

logger = get_logger(__name__)

LATEST_PROTOCOL_VERSION = "2025-06-18"
SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

DEFAULT_TOOL_TIMEOUT_SECONDS = 60.0

MethodHandler = Callable[["Session", JSONRPCRequest], Awaitable[Any]]


def text_content(text: str) -> dict[str, Any]:
    """Build a single text content item."""
    return {"type": "text", "text": text}


def error_result(message: str) -> dict[str, Any]:
    """Build an application-level error result for ``tools/call``."""
    return {"content": [text_content(message)], "isError": True}


def _discard_late_result(task: asyncio.Future[Any]) -> None:
    # Retrieve the outcome of a detached handler so it is never reported as
    # an unhandled exception
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Detached handler finished with error", extra={"error": str(exc)})


class RequestDispatcher:
    """
    Routes requests to built-in protocol methods and registered capabilities.

    The dispatcher holds no per-session state; it can serve any number of
    sessions concurrently.

    Example:
        >>> dispatcher = RequestDispatcher(registry, server_name="pentest-mcp-server")
        >>> response = await dispatcher.dispatch(session, request)
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        *,
        server_name: str = "pentest-mcp-server",
        server_version: str = "1.0.0",
        default_tool_timeout: float | None = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> None:
        self.registry = registry
        self.server_name = server_name
        self.server_version = server_version
        self.default_tool_timeout = default_tool_timeout
        self._methods: dict[str, MethodHandler] = {
            "initialize": self._initialize,
            "ping": self._ping,
            "tools/list": self._tools_list,
            "tools/call": self._tools_call,
            "resources/list": self._resources_list,
            "resources/templates/list": self._resource_templates_list,
            "resources/read": self._resources_read,
            "prompts/list": self._prompts_list,
            "prompts/get": self._prompts_get,
        }

    @classmethod
    def from_config(cls, registry: CapabilityRegistry, config: AppConfig) -> RequestDispatcher:
        return cls(
            registry,
            server_name=config.server.name,
            server_version=config.server.version,
            default_tool_timeout=config.tools.default_timeout_seconds,
        )

    @property
    def methods(self) -> list[str]:
        return list(self._methods)

    def server_capabilities(self) -> dict[str, Any]:
        return {
            "tools": {"listChanged": False},
            "resources": {"subscribe": False, "listChanged": False},
            "prompts": {"listChanged": False},
            "logging": {},
        }

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def dispatch(self, session: Session, message: Message) -> JSONRPCResponse | None:
        """
        Handle one decoded message.

        Requests run as tracked tasks on the session so the client can cancel
        them.

        Returns:
            The terminal response for a request; None for notifications,
            client responses, and requests the client cancelled.
        """
        if isinstance(message, JSONRPCNotification):
            await self.handle_notification(session, message)
            return None
        if isinstance(message, JSONRPCResponse):
            logger.debug(
                "Ignoring client response",
                extra={"session_id": session.id, "request_id": message.id},
            )
            return None

        try:
            return await session.run_request(message.id, self.handle_request(session, message))
        except ToolError as e:
            # Session closed underneath the request, or duplicate request id
            return format_error_response(message.id, tool_error_to_jsonrpc_error(e))

    async def handle_request(self, session: Session, request: JSONRPCRequest) -> JSONRPCResponse:
        """Run one request to completion and format its response."""
        started = time.monotonic()
        try:
            handler = self._methods.get(request.method)
            if handler is None:
                raise MethodNotFoundError(
                    f"Method not found: {request.method}",
                    details={"method": request.method},
                )
            result = await handler(session, request)
            response = format_success_response(request.id, result)

        except ToolError as e:
            logger.info(
                "Request failed",
                extra={
                    "session_id": session.id,
                    "request_id": request.id,
                    "method": request.method,
                    "error_code": e.error_code,
                },
            )
            response = format_error_response(request.id, tool_error_to_jsonrpc_error(e))

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.exception(
                "Unexpected error processing request",
                extra={"session_id": session.id, "request_id": request.id, "error": str(e)},
            )
            response = format_error_response(
                request.id,
                create_internal_error(
                    message=f"Internal server error: {type(e).__name__}",
                    details={"exception": str(e)},
                ),
            )

        logger.debug(
            "Request completed",
            extra={
                "session_id": session.id,
                "request_id": request.id,
                "method": request.method,
                "is_error": response.is_error,
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
            },
        )
        return response

    async def handle_notification(
        self, session: Session, notification: JSONRPCNotification
    ) -> None:
        params = notification.params or {}
        if notification.method == "notifications/cancelled":
            request_id = params.get("requestId")
            if request_id is not None and session.cancel_request(request_id):
                logger.info(
                    "Cancelling request",
                    extra={
                        "session_id": session.id,
                        "request_id": request_id,
                        "reason": params.get("reason"),
                    },
                )
        elif notification.method == "notifications/initialized":
            logger.debug("Client initialized", extra={"session_id": session.id})
        else:
            logger.debug(
                "Ignoring notification",
                extra={"session_id": session.id, "method": notification.method},
            )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _initialize(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        params = request.params or {}
        requested = params.get("protocolVersion")
        if not isinstance(requested, str) or not requested:
            raise InvalidArgumentError(
                "Invalid params: 'protocolVersion' must be a non-empty string",
                details={"field": "protocolVersion"},
            )
        capabilities = params.get("capabilities", {})
        client_info = params.get("clientInfo", {})
        if not isinstance(capabilities, dict) or not isinstance(client_info, dict):
            raise InvalidArgumentError(
                "Invalid params: 'capabilities' and 'clientInfo' must be objects",
            )

        version = (
            requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
        )
        session.activate(version, capabilities, client_info)
        logger.info(
            "Session initialized",
            extra={
                "session_id": session.id,
                "protocol_version": version,
                "client": client_info.get("name"),
            },
        )
        return {
            "protocolVersion": version,
            "capabilities": self.server_capabilities(),
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    async def _ping(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        return {}

    # -------------------------------------------------------------------------
    # Tools
    # -------------------------------------------------------------------------

    async def _tools_list(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        return {"tools": self.registry.list_tools()}

    async def _tools_call(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        params = request.params or {}
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidArgumentError(
                "Invalid params: 'name' must be a non-empty string",
                details={"field": "name"},
            )
        registration = self.registry.get_tool(name)
        arguments = registration.validate(params.get("arguments"))

        ctx = self._context(session, request, name)
        timeout = registration.call_timeout(arguments)
        if timeout is None:
            timeout = registration.timeout or self.default_tool_timeout
        return await self._invoke_tool(registration, ctx, arguments, timeout)

    async def _invoke_tool(
        self,
        registration: ToolRegistration,
        ctx: ToolContext,
        arguments: Any,
        timeout: float | None,
    ) -> dict[str, Any]:
        task = asyncio.ensure_future(registration.handler(ctx, arguments))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            # Signal the handler to stop; if it ignores the cancellation it is
            # left to finish on its own and its result is discarded
            task.cancel()
            task.add_done_callback(_discard_late_result)
            logger.warning(
                "Tool timed out",
                extra={
                    "session_id": ctx.session.id,
                    "request_id": ctx.request_id,
                    "tool": registration.name,
                    "timeout_seconds": timeout,
                },
            )
            return error_result(
                f"Tool '{registration.name}' timed out after {int(timeout * 1000)} ms"
            )

        try:
            result = task.result()
        except asyncio.CancelledError:
            return error_result(f"Tool '{registration.name}' was cancelled")
        except Exception as e:
            logger.info(
                "Tool handler failed",
                extra={
                    "session_id": ctx.session.id,
                    "request_id": ctx.request_id,
                    "tool": registration.name,
                    "error": str(e),
                },
            )
            return error_result(f"Error in tool '{registration.name}': {e}")

        if not isinstance(result, dict) or not isinstance(result.get("content"), list):
            raise InternalError(
                f"Tool '{registration.name}' returned an invalid result",
                details={"tool": registration.name},
            )
        return result

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    async def _resources_list(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        return {"resources": self.registry.list_resources()}

    async def _resource_templates_list(
        self, session: Session, request: JSONRPCRequest
    ) -> dict[str, Any]:
        return {"resourceTemplates": self.registry.list_resource_templates()}

    async def _resources_read(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        params = request.params or {}
        uri = params.get("uri")
        if not isinstance(uri, str) or not uri:
            raise InvalidArgumentError(
                "Invalid params: 'uri' must be a non-empty string",
                details={"field": "uri"},
            )
        registration, variables = self.registry.resolve_resource(uri)
        ctx = self._context(session, request, uri)
        try:
            contents = await registration.handler(ctx, uri, variables)
        except ToolError:
            raise
        except Exception as e:
            raise InternalError(
                f"Error reading resource '{uri}': {e}",
                details={"uri": uri, "exception_type": type(e).__name__},
            ) from e

        if isinstance(contents, str):
            contents = [{"uri": uri, "mimeType": registration.mime_type, "text": contents}]
        return {"contents": contents}

    # -------------------------------------------------------------------------
    # Prompts
    # -------------------------------------------------------------------------

    async def _prompts_list(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        return {"prompts": self.registry.list_prompts()}

    async def _prompts_get(self, session: Session, request: JSONRPCRequest) -> dict[str, Any]:
        params = request.params or {}
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise InvalidArgumentError(
                "Invalid params: 'name' must be a non-empty string",
                details={"field": "name"},
            )
        registration = self.registry.get_prompt(name)
        arguments = registration.validate(params.get("arguments"))
        ctx = self._context(session, request, name)
        try:
            rendered = await registration.handler(ctx, arguments)
        except ToolError:
            raise
        except Exception as e:
            raise InternalError(
                f"Error rendering prompt '{name}': {e}",
                details={"prompt": name, "exception_type": type(e).__name__},
            ) from e

        if isinstance(rendered, list):
            rendered = {"messages": rendered}
        rendered.setdefault("description", registration.description)
        return rendered

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _context(session: Session, request: JSONRPCRequest, name: str) -> ToolContext:
        meta = (request.params or {}).get("_meta")
        return ToolContext(
            name=name,
            session=session,
            request_id=request.id,
            metadata=meta if isinstance(meta, dict) else {},
        )
