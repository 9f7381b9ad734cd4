"""
Network reachability tool for the MCP pentest server.

This module implements:
- network-scan: TCP connect check against one port, or a DNS lookup when
  no port is given
"""

from __future__ import annotations

import asyncio
import socket
from typing import TYPE_CHECKING, Any

from pydantic import Field

from mcp_pentest.dispatcher import text_content
from mcp_pentest.logging import get_logger
from mcp_pentest.registry import Arguments

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.context import ToolContext
    from mcp_pentest.registry import CapabilityRegistry

logger = get_logger(__name__)


class NetworkScanArguments(Arguments):
    host: str = Field(min_length=1, description="Host name or address")
    port: int | None = Field(default=None, ge=1, le=65535, description="TCP port to probe")
    timeout: int = Field(default=5000, gt=0, description="Connect timeout in milliseconds")


async def probe_port(host: str, port: int, timeout: float) -> bool:
    """
    Try a TCP connection.

    Returns:
        True if the connection was accepted within ``timeout`` seconds.
    """
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        logger.debug("Error closing probe connection", extra={"host": host, "port": port})
    return True


async def resolve_host(host: str) -> tuple[str, int]:
    """
    Resolve a host name.

    Returns:
        Tuple of (address, IP version).

    Raises:
        socket.gaierror: If the name cannot be resolved.
    """
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    family, _, _, _, sockaddr = infos[0]
    return sockaddr[0], 6 if family == socket.AF_INET6 else 4


async def network_scan(ctx: ToolContext, args: NetworkScanArguments) -> dict[str, Any]:
    """Handle the network-scan tool call."""
    if args.port is not None:
        is_open = await probe_port(args.host, args.port, args.timeout / 1000.0)
        state = "open" if is_open else "closed/filtered"
        return {"content": [text_content(f"Port {args.port} on {args.host} is {state}")]}

    try:
        address, version = await resolve_host(args.host)
    except socket.gaierror as e:
        return {"content": [text_content(f"Host {args.host} could not be resolved: {e}")]}
    return {
        "content": [text_content(f"Host {args.host} resolves to {address} (IPv{version})")]
    }


def register(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    if config.network.enabled:
        registry.tool(
            "network-scan",
            arguments=NetworkScanArguments,
            title="Network Scan",
            description="Basic network connectivity testing",
        )(network_scan)
