"""
Command execution tool for the MCP pentest server.

This module implements:
- execute-command: Runs a shell command and returns its output

The call timeout is enforced by the dispatcher: when it expires the handler
is cancelled and the child process is killed.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from typing import TYPE_CHECKING, Any

from pydantic import Field

from mcp_pentest.dispatcher import error_result, text_content
from mcp_pentest.logging import get_logger
from mcp_pentest.registry import Arguments, ToolRegistration

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.context import ToolContext
    from mcp_pentest.registry import CapabilityRegistry

logger = get_logger(__name__)


class ExecuteCommandArguments(Arguments):
    command: str = Field(description="Command line passed to the shell")
    args: list[str] = Field(default_factory=list, description="Extra arguments, shell-quoted")
    timeout: int | None = Field(
        default=None,
        gt=0,
        description="Timeout in milliseconds",
    )


def build_command_line(command: str, args: list[str]) -> str:
    """
    Join the command with its shell-quoted arguments.

    Example:
        >>> build_command_line("ls", ["-la", "my dir"])
        "ls -la 'my dir'"
    """
    return " ".join([command, *(shlex.quote(arg) for arg in args)])


async def _run(command_line: str) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_shell(
        command_line,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


async def execute_command(ctx: ToolContext, args: ExecuteCommandArguments) -> dict[str, Any]:
    """
    Handle the execute-command tool call.

    The command is recorded in the session audit store under
    ``command_<epoch millis>`` before it runs, and a ``notifications/message``
    notification announces it to the client.
    """
    command_line = build_command_line(args.command, args.args)

    ctx.audit.record(
        f"command_{int(time.time() * 1000)}",
        "command_execution",
        {"command": command_line},
    )
    ctx.log("info", {"event": "command_started", "command": command_line})
    logger.info(
        "Executing command",
        extra={"session_id": ctx.session.id, "request_id": ctx.request_id},
    )

    try:
        returncode, stdout, stderr = await _run(command_line)
    except OSError as e:
        return error_result(f"Command execution error: {e}")

    text = f"Command: {command_line}\n\nSTDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"
    if returncode != 0:
        return error_result(f"Command execution error: exit code {returncode}\n\n{text}")
    return {"content": [text_content(text)]}


def register(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    if not config.command.enabled:
        return
    registry.register_tool(
        ToolRegistration(
            name="execute-command",
            handler=execute_command,
            arguments=ExecuteCommandArguments,
            title="Execute Command",
            description="Execute system commands (use with caution)",
            timeout=config.command.default_timeout_ms / 1000.0,
            timeout_argument="timeout",
        )
    )

