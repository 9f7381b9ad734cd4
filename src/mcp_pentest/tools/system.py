"""
System information tool for the MCP pentest server.

This module implements:
- system-info: Platform, memory and uptime facts, optionally with the
  process environment, the process table and network interfaces
"""

from __future__ import annotations

import asyncio
import json
import os
import platform
import socket
import sys
from datetime import UTC, datetime
from time import time
from typing import TYPE_CHECKING, Any

import psutil
from pydantic import Field

from mcp_pentest.dispatcher import text_content
from mcp_pentest.logging import get_logger
from mcp_pentest.registry import Arguments

if TYPE_CHECKING:
    from mcp_pentest.config import ToolsConfig
    from mcp_pentest.context import ToolContext
    from mcp_pentest.registry import CapabilityRegistry

logger = get_logger(__name__)

PROCESS_ATTRS = ["pid", "name", "username", "status", "cpu_percent", "memory_percent"]


class SystemInfoArguments(Arguments):
    include_env: bool = Field(
        default=False,
        alias="includeEnv",
        description="Include the server's environment variables",
    )
    include_processes: bool = Field(
        default=False,
        alias="includeProcesses",
        description="Include the process table",
    )
    include_network: bool = Field(
        default=False,
        alias="includeNetwork",
        description="Include network interface addresses",
    )


# =============================================================================
# Helper Functions for System Data Collection
# =============================================================================


def _get_basic_info() -> dict[str, Any]:
    """
    Collect platform, memory and uptime information.

    Returns:
        Dictionary with platform, arch, hostname, python version, cwd,
        uptime, boot time, CPU count and memory usage.
    """
    process = psutil.Process()
    memory = psutil.virtual_memory()
    process_memory = process.memory_info()

    return {
        "platform": sys.platform,
        "arch": platform.machine(),
        "hostname": socket.gethostname(),
        "kernelVersion": platform.release(),
        "pythonVersion": platform.python_version(),
        "pid": os.getpid(),
        "cwd": os.getcwd(),
        "uptime": round(time() - process.create_time(), 3),
        "bootTime": datetime.fromtimestamp(psutil.boot_time(), UTC).isoformat(),
        "cpuCount": psutil.cpu_count(logical=True) or 1,
        "memoryUsage": {
            "total": memory.total,
            "available": memory.available,
            "rss": process_memory.rss,
            "vms": process_memory.vms,
        },
    }


def _get_processes() -> list[dict[str, Any]]:
    processes = []
    for proc in psutil.process_iter(PROCESS_ATTRS):
        # Attributes that could not be read come back as None
        processes.append(dict(proc.info))
    return processes


def _get_network_interfaces() -> list[dict[str, Any]]:
    """
    Collect interface addresses and link state.

    Returns:
        List of interfaces with name, state, mac_address and IPv4/IPv6 addresses.
    """
    interfaces = []
    net_if_stats = psutil.net_if_stats()

    for iface_name, addrs in psutil.net_if_addrs().items():
        iface_info: dict[str, Any] = {
            "name": iface_name,
            "state": "unknown",
            "mac_address": None,
            "ipv4_addresses": [],
            "ipv6_addresses": [],
        }
        if iface_name in net_if_stats:
            iface_info["state"] = "up" if net_if_stats[iface_name].isup else "down"

        for addr in addrs:
            if addr.family == socket.AF_INET:
                iface_info["ipv4_addresses"].append(
                    {"address": addr.address, "netmask": addr.netmask}
                )
            elif addr.family == socket.AF_INET6:
                iface_info["ipv6_addresses"].append(
                    {"address": addr.address, "netmask": addr.netmask}
                )
            elif addr.family == psutil.AF_LINK:
                iface_info["mac_address"] = addr.address

        interfaces.append(iface_info)

    return interfaces


def collect_system_info(
    include_env: bool = False,
    include_processes: bool = False,
    include_network: bool = False,
) -> dict[str, Any]:
    info = _get_basic_info()
    if include_env:
        info["environment"] = dict(os.environ)
    if include_processes:
        try:
            info["processes"] = _get_processes()
        except psutil.Error as e:
            info["processError"] = str(e)
    if include_network:
        info["network"] = _get_network_interfaces()
    return info


# =============================================================================
# system-info
# =============================================================================


async def system_info(ctx: ToolContext, args: SystemInfoArguments) -> dict[str, Any]:
    """
    Handle the system-info tool call.

    The gathered information is stored in the session audit store under the
    ``system_info`` key.
    """
    info = await asyncio.to_thread(
        collect_system_info,
        args.include_env,
        args.include_processes,
        args.include_network,
    )
    ctx.audit.record("system_info", "system_info", info)
    return {"content": [text_content(json.dumps(info, indent=2, default=str))]}


def register(registry: CapabilityRegistry, config: ToolsConfig) -> None:
    if config.system_info.enabled:
        registry.tool(
            "system-info",
            arguments=SystemInfoArguments,
            title="System Information",
            description="Gather system information",
        )(system_info)
