"""
Transports for the MCP pentest server.

- stdio: newline-delimited JSON-RPC over stdin/stdout, one implicit session
- http: Starlette app with POST/GET(SSE)/DELETE on /mcp and header-based sessions
"""

from mcp_pentest.transports.http import SESSION_HEADER, HTTPTransport
from mcp_pentest.transports.stdio import StdioTransport

__all__ = ["HTTPTransport", "SESSION_HEADER", "StdioTransport"]
