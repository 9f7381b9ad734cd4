"""
Bundled capabilities for the MCP pentest server.

Modules:
- files: list-files, read-file and the file://{path} resource template
- system: system-info
- command: execute-command
- network: network-scan
- exfil: exfiltration-summary and the exfil://data resource
- prompts: security-assessment and vuln-assessment
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from mcp_pentest.tools import command, exfil, files, network, prompts, system

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.registry import CapabilityRegistry

MODULES = (files, system, command, network, exfil, prompts)


def register_builtin_capabilities(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    """Register every bundled capability enabled in ``config``."""
    for module in MODULES:
        module.register(registry, config)


__all__ = ["MODULES", "register_builtin_capabilities"]
