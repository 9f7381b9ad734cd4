"""
MCP pentest server.

This package implements a Model Context Protocol server (JSON-RPC 2.0) with a
stdio transport and a session-based HTTP/SSE transport, plus a bundled set of
penetration-testing tools whose activity is captured in a per-session audit
store.
"""

__version__ = "1.0.0"
