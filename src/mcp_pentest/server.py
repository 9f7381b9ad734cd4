"""
MCP Server wiring for the MCP pentest server.

This module builds the capability registry, the session manager and the
request dispatcher from an AppConfig, and runs the configured transport(s):

- stdio: one implicit session over stdin/stdout; exits at end of input
- http: Starlette app under uvicorn; exits when uvicorn shuts down
- both: runs the two side by side; whichever stops first stops the other
"""

from __future__ import annotations

import asyncio
import sys

import yaml
from pydantic import ValidationError

from mcp_pentest.config import AppConfig, load_config
from mcp_pentest.dispatcher import RequestDispatcher
from mcp_pentest.logging import get_logger, setup_logging
from mcp_pentest.registry import CapabilityRegistry
from mcp_pentest.session import SessionManager
from mcp_pentest.tools import register_builtin_capabilities
from mcp_pentest.transports.http import HTTPTransport
from mcp_pentest.transports.stdio import EXIT_FATAL, EXIT_OK, StdioTransport

logger = get_logger(__name__)


def build_registry(config: AppConfig) -> CapabilityRegistry:
    """
    Create the frozen registry of bundled capabilities enabled in ``config``.
    """
    registry = CapabilityRegistry()
    register_builtin_capabilities(registry, config.tools)
    registry.freeze()
    return registry


class MCPServer:
    """
    Owns the shared components and the transports built on them.

    Both transports share one SessionManager and one RequestDispatcher.

    Example:
        >>> server = MCPServer(load_config(cli_args=["--transport", "http"]))
        >>> exit_code = await server.run()

    Attributes:
        config: Application configuration.
        registry: Frozen CapabilityRegistry.
        session_manager: SessionManager shared by all transports.
        dispatcher: RequestDispatcher shared by all transports.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> None:
        self.config = config if config is not None else AppConfig()
        self.registry = registry if registry is not None else build_registry(self.config)
        self.session_manager = SessionManager.from_config(self.config)
        self.dispatcher = RequestDispatcher.from_config(self.registry, self.config)
        self.stdio: StdioTransport | None = None
        self.http: HTTPTransport | None = None

    def create_stdio_transport(self) -> StdioTransport:
        self.stdio = StdioTransport(self.dispatcher, self.session_manager)
        return self.stdio

    def create_http_transport(self) -> HTTPTransport:
        self.http = HTTPTransport(
            self.dispatcher,
            self.session_manager,
            keepalive_interval=self.config.sessions.keepalive_interval_seconds,
            debug=self.config.logging.debug_mode,
        )
        return self.http

    async def run(self) -> int:
        """
        Run the configured transport(s) until they stop.

        Returns:
            Process exit code.
        """
        transport = self.config.server.transport
        logger.info(
            "MCP Server starting",
            extra={
                "transport": transport,
                "capabilities_count": len(self.registry),
                "version": self.config.server.version,
            },
        )
        try:
            if transport == "stdio":
                return await self.create_stdio_transport().run()
            if transport == "http":
                await self.create_http_transport().serve(
                    self.config.server.host, self.config.server.port
                )
                return EXIT_OK
            return await self._run_both()
        finally:
            self.session_manager.close_all()
            logger.info("MCP Server stopped")

    async def _run_both(self) -> int:
        stdio_task = asyncio.create_task(self.create_stdio_transport().run())
        http_task = asyncio.create_task(
            self.create_http_transport().serve(self.config.server.host, self.config.server.port)
        )

        await asyncio.wait({stdio_task, http_task}, return_when=asyncio.FIRST_COMPLETED)
        if not http_task.done():
            self.http.stop()
        if not stdio_task.done():
            # stdin may never reach EOF
            stdio_task.cancel()
        await asyncio.gather(stdio_task, http_task, return_exceptions=True)

        if http_task.cancelled() or http_task.exception() is not None:
            return EXIT_FATAL
        if stdio_task.done() and not stdio_task.cancelled() and stdio_task.exception() is None:
            return stdio_task.result()
        return EXIT_OK

    def stop(self) -> None:
        """Stop every running transport."""
        if self.stdio is not None:
            self.stdio.stop()
        if self.http is not None:
            self.http.stop()


def create_server(config: AppConfig | None = None) -> MCPServer:
    """
    Create an MCP Server with the bundled capabilities.

    Example:
        >>> server = create_server()
        >>> asyncio.run(server.run())
    """
    return MCPServer(config)


def main(argv: list[str] | None = None) -> int:
    """
    Command-line entry point.

    Returns:
        0 on a clean shutdown, 1 on configuration or startup failure.
    """
    try:
        config = load_config(cli_args=argv)
    except (FileNotFoundError, yaml.YAMLError, ValidationError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_FATAL

    setup_logging(config.logging, level=config.server.log_level)

    try:
        server = create_server(config)
    except (ValueError, RuntimeError) as e:
        logger.error("Failed to build capability registry", extra={"error": str(e)})
        return EXIT_FATAL

    try:
        return asyncio.run(server.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK
