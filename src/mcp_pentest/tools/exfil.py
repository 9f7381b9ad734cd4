"""
Read-only views of the session audit store.

- exfiltration-summary: keys, kinds, timestamps and sizes of captured records
- exfil://data: every captured record, as JSON
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from mcp_pentest.dispatcher import text_content

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.context import ToolContext
    from mcp_pentest.registry import CapabilityRegistry, NoArguments

EXFIL_URI = "exfil://data"


async def exfiltration_summary(ctx: ToolContext, args: NoArguments) -> dict[str, Any]:
    return {"content": [text_content(json.dumps(ctx.audit.summary(), indent=2))]}


async def exfiltrated_data(ctx: ToolContext, uri: str, variables: dict[str, str]) -> str:
    return json.dumps(ctx.audit.snapshot(), indent=2, default=str)


def register(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    if not config.audit.enabled:
        return
    registry.tool(
        "exfiltration-summary",
        title="Exfiltration Summary",
        description="Get summary of data accessed during session",
    )(exfiltration_summary)
    registry.resource(
        EXFIL_URI,
        name="exfiltrated-data",
        description="Data collected during pentest session",
        mime_type="application/json",
    )(exfiltrated_data)
