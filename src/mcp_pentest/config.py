"""
Configuration management for the MCP pentest server.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/mcp-pentest/config.yml or --config path)
3. Environment variables (MCP_PENTEST_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/mcp-pentest/config.yml")
DEFAULT_ENV_PREFIX = "MCP_PENTEST_"

VALID_TRANSPORTS = ("stdio", "http", "both")

# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Server settings configuration.

    Attributes:
        name: Server name reported in initialize results.
        version: Server version reported in initialize results.
        transport: Which transport(s) to run: 'stdio', 'http', or 'both'.
        host: HTTP bind address.
        port: HTTP bind port.
        log_level: Initial application log level.
    """

    name: str = Field(
        default="pentest-mcp-server",
        description="Server name reported to clients",
    )
    version: str = Field(
        default="1.0.0",
        description="Server version reported to clients",
    )
    transport: str = Field(
        default="stdio",
        description="Transport: 'stdio', 'http', or 'both'",
    )
    host: str = Field(
        default="127.0.0.1",
        description="HTTP bind address",
    )
    port: int = Field(
        default=3000,
        description="HTTP bind port",
        ge=1,
        le=65535,
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate transport selection."""
        v_lower = v.lower()
        if v_lower not in VALID_TRANSPORTS:
            raise ValueError(
                f"Invalid transport: {v}. Must be one of: {', '.join(VALID_TRANSPORTS)}"
            )
        return v_lower

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Session Configuration
# =============================================================================


class SessionsConfig(BaseModel):
    """Session management configuration.

    Attributes:
        max_sessions: Maximum number of live sessions.
        outbound_queue_size: Maximum pending messages per session queue.
        keepalive_interval_seconds: Idle interval before an event stream
            sends a keepalive comment.
    """

    max_sessions: int = Field(
        default=256,
        description="Maximum number of concurrently live sessions",
        ge=1,
    )
    outbound_queue_size: int = Field(
        default=1000,
        description="Maximum pending outbound messages per session",
        ge=1,
    )
    keepalive_interval_seconds: float = Field(
        default=15.0,
        description="Event stream keepalive interval in seconds",
        gt=0,
    )


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        stream: Output stream ('stderr' or 'stdout').
        json_format: Whether to emit JSON log lines.
        debug_mode: Enable extra diagnostic logging.
    """

    stream: str = Field(
        default="stderr",
        description="Log output stream: 'stderr' or 'stdout'",
    )
    json_format: bool = Field(
        default=True,
        description="Whether to emit JSON formatted log lines",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("stream")
    @classmethod
    def validate_stream(cls, v: str) -> str:
        """Validate the log stream name."""
        v_lower = v.lower()
        if v_lower not in {"stderr", "stdout"}:
            raise ValueError(f"Invalid log stream: {v}. Must be 'stderr' or 'stdout'")
        return v_lower


# =============================================================================
# Audit Configuration
# =============================================================================


class AuditConfig(BaseModel):
    """Audit store configuration.

    Attributes:
        max_items: Maximum records retained per session; the oldest record
            is evicted when the limit is exceeded.
    """

    max_items: int = Field(
        default=1000,
        description="Maximum audit records retained per session",
        ge=1,
    )


# =============================================================================
# Tools Configuration
# =============================================================================


class ToolNamespaceConfig(BaseModel):
    """Configuration for a single bundled capability.

    Attributes:
        enabled: Whether the capability is registered.
    """

    enabled: bool = Field(
        default=True,
        description="Whether this capability is enabled",
    )


class ReadFileToolConfig(ToolNamespaceConfig):
    """Configuration for the read-file tool.

    Attributes:
        max_bytes: Default maximum file size returned.
    """

    max_bytes: int = Field(
        default=1024 * 1024,
        description="Default maximum file size in bytes",
        ge=1,
    )


class CommandToolConfig(ToolNamespaceConfig):
    """Configuration for the execute-command tool.

    Attributes:
        default_timeout_ms: Timeout used when a call does not pass one.
    """

    default_timeout_ms: int = Field(
        default=30000,
        description="Default command timeout in milliseconds",
        ge=1,
    )


class ToolsConfig(BaseModel):
    """Bundled capability configuration.

    Attributes:
        default_timeout_seconds: Timeout applied to tools without their own.
        list_files: list-files tool configuration.
        read_file: read-file tool configuration.
        system_info: system-info tool configuration.
        command: execute-command tool configuration.
        network: network-scan tool configuration.
        audit: exfiltration-summary tool and exfil://data resource configuration.
        prompts: Bundled prompt configuration.
    """

    default_timeout_seconds: float | None = Field(
        default=60.0,
        description="Default tool timeout in seconds (null disables)",
    )
    list_files: ToolNamespaceConfig = Field(
        default_factory=ToolNamespaceConfig,
        description="list-files tool configuration",
    )
    read_file: ReadFileToolConfig = Field(
        default_factory=ReadFileToolConfig,
        description="read-file tool configuration",
    )
    system_info: ToolNamespaceConfig = Field(
        default_factory=ToolNamespaceConfig,
        description="system-info tool configuration",
    )
    command: CommandToolConfig = Field(
        default_factory=CommandToolConfig,
        description="execute-command tool configuration",
    )
    network: ToolNamespaceConfig = Field(
        default_factory=ToolNamespaceConfig,
        description="network-scan tool configuration",
    )
    audit: ToolNamespaceConfig = Field(
        default_factory=ToolNamespaceConfig,
        description="exfiltration-summary tool and exfil://data resource configuration",
    )
    prompts: ToolNamespaceConfig = Field(
        default_factory=ToolNamespaceConfig,
        description="Bundled prompt configuration",
    )


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Built from multiple layers following the precedence rules:
    1. Built-in defaults (defined in this model)
    2. YAML config file
    3. Environment variables (MCP_PENTEST_* prefix)
    4. Command-line arguments

    Attributes:
        server: Server settings.
        sessions: Session management settings.
        logging: Logging configuration.
        audit: Audit store configuration.
        tools: Bundled capability configuration.
    """

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Server settings",
    )
    sessions: SessionsConfig = Field(
        default_factory=SessionsConfig,
        description="Session management settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    audit: AuditConfig = Field(
        default_factory=AuditConfig,
        description="Audit store configuration",
    )
    tools: ToolsConfig = Field(
        default_factory=ToolsConfig,
        description="Bundled capability configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    - Prefix: MCP_PENTEST_ (configurable)
    - Nested keys: Double underscore (__) separator
    - Example: MCP_PENTEST_SERVER__PORT=8080
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="MCP pentest server (stdio and HTTP/SSE transports)",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--transport",
        "-t",
        type=str,
        choices=list(VALID_TRANSPORTS),
        help="Transport to serve",
    )
    parser.add_argument(
        "--host",
        type=str,
        help="HTTP bind address",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="HTTP bind port",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}
    server: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config
    if parsed.transport:
        server["transport"] = parsed.transport
    if parsed.host:
        server["host"] = parsed.host
    if parsed.port is not None:
        server["port"] = parsed.port
    if parsed.log_level:
        server["log_level"] = parsed.log_level

    if parsed.debug:
        result["logging"] = {"debug_mode": True}
        server["log_level"] = "debug"

    if server:
        result["server"] = server

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Later sources override earlier ones: defaults, YAML file, environment
    variables, then command-line arguments.

    Args:
        config_path: Path to YAML configuration file. If None, uses the CLI
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=["--transport", "http"])
        >>> config.server.transport
        'http'
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
