"""
Pytest configuration for the MCP pentest server tests.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from pydantic import Field

from mcp_pentest.context import ToolContext
from mcp_pentest.dispatcher import RequestDispatcher, text_content
from mcp_pentest.protocol import JSONRPCNotification, JSONRPCRequest
from mcp_pentest.registry import Arguments, CapabilityRegistry
from mcp_pentest.session import Session, SessionManager

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Capabilities used across test modules
# =============================================================================


class EchoArguments(Arguments):
    text: str = Field(description="Text to echo")
    times: int = Field(default=1, ge=1)


class SleepArguments(Arguments):
    seconds: float = 10.0
    timeout_ms: int | None = Field(default=None, alias="timeoutMs")


class TopicArguments(Arguments):
    topic: str
    detail: str | None = None


def build_test_registry() -> CapabilityRegistry:
    """Registry with a small set of well-behaved and misbehaving capabilities."""
    registry = CapabilityRegistry()

    @registry.tool("echo", arguments=EchoArguments, description="Echo text back")
    async def echo(ctx: ToolContext, args: EchoArguments) -> dict[str, Any]:
        return {"content": [text_content(args.text * args.times)]}

    @registry.tool("fail", description="Always raises")
    async def fail(ctx: ToolContext, args: Arguments) -> dict[str, Any]:
        raise RuntimeError("boom")

    @registry.tool(
        "sleep",
        arguments=SleepArguments,
        description="Sleeps",
        timeout_argument="timeout_ms",
    )
    async def sleep(ctx: ToolContext, args: SleepArguments) -> dict[str, Any]:
        await asyncio.sleep(args.seconds)
        return {"content": [text_content("slept")]}

    @registry.tool("notify", description="Sends a notification then answers")
    async def notify(ctx: ToolContext, args: Arguments) -> dict[str, Any]:
        ctx.log("info", {"event": "working"})
        return {"content": [text_content("done")]}

    @registry.tool("bad-result", description="Returns an invalid result")
    async def bad_result(ctx: ToolContext, args: Arguments) -> Any:
        return "not a dict"

    @registry.prompt("topic", arguments=TopicArguments, description="A topic prompt")
    async def topic(ctx: ToolContext, args: TopicArguments) -> list[dict[str, Any]]:
        return [{"role": "user", "content": {"type": "text", "text": f"About {args.topic}"}}]

    @registry.prompt("broken-prompt", description="Raises while rendering")
    async def broken_prompt(ctx: ToolContext, args: Arguments) -> list[dict[str, Any]]:
        raise RuntimeError("render failed")

    @registry.resource("test://fixed", name="fixed", mime_type="text/plain")
    async def fixed(ctx: ToolContext, uri: str, variables: dict[str, str]) -> str:
        return "fixed contents"

    @registry.resource("test://items/{item}", name="item")
    async def item(ctx: ToolContext, uri: str, variables: dict[str, str]) -> str:
        return f"item {variables['item']}"

    registry.freeze()
    return registry


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def registry() -> CapabilityRegistry:
    return build_test_registry()


@pytest.fixture
def dispatcher(registry: CapabilityRegistry) -> RequestDispatcher:
    return RequestDispatcher(registry, default_tool_timeout=5.0)


@pytest.fixture
def session_manager() -> SessionManager:
    return SessionManager(max_sessions=8, queue_size=16)


@pytest.fixture
def session(session_manager: SessionManager) -> Session:
    return session_manager.create_session()


@pytest.fixture
def active_session(session: Session) -> Session:
    session.activate("2025-06-18", {}, {"name": "test-client", "version": "1.0"})
    return session


def make_request(
    method: str, params: dict[str, Any] | None = None, request_id: str | int = 1
) -> JSONRPCRequest:
    return JSONRPCRequest(id=request_id, method=method, params=params)


def make_notification(method: str, params: dict[str, Any] | None = None) -> JSONRPCNotification:
    return JSONRPCNotification(method=method, params=params)


def initialize_params(version: str = "2025-06-18") -> dict[str, Any]:
    return {
        "protocolVersion": version,
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "1.0"},
    }
