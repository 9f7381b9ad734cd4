"""
Bundled prompts for the MCP pentest server.

- security-assessment: recommendations for a target, given optional findings
- vuln-assessment: attack surface review of gathered system information
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import Field

from mcp_pentest.registry import Arguments

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.context import ToolContext
    from mcp_pentest.registry import CapabilityRegistry


class SecurityAssessmentArguments(Arguments):
    target: str = Field(description="System or organisation being assessed")
    findings: str | None = Field(default=None, description="Findings gathered so far")


class VulnAssessmentArguments(Arguments):
    system_info: str = Field(alias="systemInfo", description="Gathered system information")
    services: str | None = Field(default=None, description="Exposed services")


def _user_message(text: str) -> dict[str, Any]:
    return {"role": "user", "content": {"type": "text", "text": text}}


async def security_assessment(
    ctx: ToolContext, args: SecurityAssessmentArguments
) -> list[dict[str, Any]]:
    text = f"Perform a security assessment for target: {args.target}"
    if args.findings:
        text += f"\nFindings: {args.findings}"
    text += "\n\nProvide recommendations for improving security posture."
    return [_user_message(text)]


async def vuln_assessment(
    ctx: ToolContext, args: VulnAssessmentArguments
) -> list[dict[str, Any]]:
    text = (
        "Analyze the following system information for potential vulnerabilities:"
        f"\n\nSystem Info:\n{args.system_info}"
    )
    if args.services:
        text += f"\n\nServices:\n{args.services}"
    text += "\n\nProvide a security assessment and potential attack vectors."
    return [_user_message(text)]


def register(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    if not config.prompts.enabled:
        return
    registry.prompt(
        "security-assessment",
        arguments=SecurityAssessmentArguments,
        title="Security Assessment",
        description="Generate security assessment based on gathered data",
    )(security_assessment)
    registry.prompt(
        "vuln-assessment",
        arguments=VulnAssessmentArguments,
        title="Vulnerability Assessment",
        description="Assess potential vulnerabilities",
    )(vuln_assessment)
