"""
File system tools for the MCP pentest server.

This module implements:
- list-files: Directory listing with size, mtime and permission bits
- read-file: File contents, recorded in the session audit store
- file://{path}: Resource template exposing file contents
"""

from __future__ import annotations

import asyncio
import codecs
import functools
import json
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

from pydantic import Field, field_validator

from mcp_pentest.dispatcher import error_result, text_content
from mcp_pentest.logging import get_logger
from mcp_pentest.registry import Arguments, ToolRegistration

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.context import ToolContext
    from mcp_pentest.registry import CapabilityRegistry

logger = get_logger(__name__)

DEFAULT_MAX_BYTES = 1024 * 1024


# =============================================================================
# Argument Models
# =============================================================================


class ListFilesArguments(Arguments):
    path: str = Field(default=".", description="Directory to list")
    recursive: bool = Field(default=False, description="Descend into subdirectories")
    show_hidden: bool = Field(
        default=False,
        alias="showHidden",
        description="Include entries whose name starts with a dot",
    )


class ReadFileArguments(Arguments):
    file_path: str = Field(alias="filePath", description="Path of the file to read")
    encoding: str = Field(default="utf-8", description="Text encoding")
    max_size: int | None = Field(
        default=None,
        alias="maxSize",
        gt=0,
        description="Maximum number of bytes to return",
    )

    @field_validator("encoding")
    @classmethod
    def validate_encoding(cls, v: str) -> str:
        # Node-style names such as "utf8" are accepted by codecs as well
        try:
            return codecs.lookup(v).name
        except LookupError as e:
            raise ValueError(f"Unknown encoding: {v}") from e


# =============================================================================
# Helpers
# =============================================================================


def _describe(entry: os.DirEntry[str], parent: Path) -> dict[str, Any]:
    try:
        stats = entry.stat()
    except OSError:
        # Dangling symlink
        stats = entry.stat(follow_symlinks=False)
    return {
        "name": entry.name,
        "path": str(parent / entry.name),
        "type": "directory" if entry.is_dir() else "file",
        "size": stats.st_size,
        "modified": datetime.fromtimestamp(stats.st_mtime, UTC).isoformat(),
        "permissions": format(stats.st_mode, "o"),
    }


def _list_directory(target: Path, recursive: bool, show_hidden: bool) -> list[dict[str, Any]]:
    """
    List a directory, depth first when ``recursive`` is set.

    Symlinked directories are listed but not descended into.

    Raises:
        OSError: If ``target`` cannot be read.
    """
    files: list[dict[str, Any]] = []
    with os.scandir(target) as entries:
        ordered = sorted(entries, key=lambda entry: entry.name)

    for entry in ordered:
        if not show_hidden and entry.name.startswith("."):
            continue
        files.append(_describe(entry, target))
        if recursive and entry.is_dir(follow_symlinks=False):
            try:
                files.extend(_list_directory(target / entry.name, recursive, show_hidden))
            except PermissionError:
                logger.debug("Skipping unreadable directory", extra={"path": entry.path})
    return files


def _read_prefix(path: Path, limit: int) -> bytes:
    with open(path, "rb") as f:
        return f.read(limit)


# =============================================================================
# list-files
# =============================================================================


async def list_files(ctx: ToolContext, args: ListFilesArguments) -> dict[str, Any]:
    """
    Handle the list-files tool call.

    Returns:
        Tool result whose text is a JSON array of entries with name, path,
        type, size, modified and permissions.
    """
    try:
        files = await asyncio.to_thread(
            _list_directory, Path(args.path), args.recursive, args.show_hidden
        )
    except OSError as e:
        return error_result(f"Error: {e}")

    return {"content": [text_content(json.dumps(files, indent=2))]}


# =============================================================================
# read-file
# =============================================================================


async def read_file(
    ctx: ToolContext,
    args: ReadFileArguments,
    *,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> dict[str, Any]:
    """
    Handle the read-file tool call.

    Reads at most ``maxSize`` bytes (or the configured default), decodes them
    and records the read in the session audit store under the file path.
    """
    limit = args.max_size or max_bytes
    try:
        # One extra byte tells whether the file was cut short
        data = await asyncio.to_thread(_read_prefix, Path(args.file_path), limit + 1)
    except OSError as e:
        return error_result(f"Error reading file: {e}")

    truncated = len(data) > limit
    content = data[:limit].decode(args.encoding, errors="replace")

    ctx.audit.record(
        args.file_path,
        "file_read",
        {"content": content, "size": len(content), "truncated": truncated},
    )
    return {"content": [text_content(content)]}


# =============================================================================
# file://{path}
# =============================================================================


async def read_file_resource(
    ctx: ToolContext,
    uri: str,
    variables: dict[str, str],
    *,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> str:
    """Read the file named by a ``file://`` URI. OSError propagates."""
    path = Path(unquote(variables["path"]))
    data = await asyncio.to_thread(_read_prefix, path, max_bytes)
    return data.decode("utf-8", errors="replace")


def register(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    """Register the enabled file system capabilities."""
    if config.list_files.enabled:
        registry.tool(
            "list-files",
            arguments=ListFilesArguments,
            title="List Files",
            description="List files and directories in a given path",
        )(list_files)

    if config.read_file.enabled:
        max_bytes = config.read_file.max_bytes
        registry.register_tool(
            ToolRegistration(
                name="read-file",
                handler=functools.partial(read_file, max_bytes=max_bytes),
                arguments=ReadFileArguments,
                title="Read File",
                description="Read contents of a file",
            )
        )
        registry.resource(
            "file://{path}",
            name="system-file",
            description="Access to system files",
        )(functools.partial(read_file_resource, max_bytes=max_bytes))
