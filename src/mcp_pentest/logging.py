"""
Structured logging for the MCP pentest server.

Features:
- JSON-formatted log output for machine-readable logs
- Consistent field structure across all log entries
- Logs go to stderr by default so the stdio transport keeps stdout
  reserved for protocol messages
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_pentest.config import LoggingConfig

ROOT_LOGGER_NAME = "mcp_pentest"

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JSONFormatter(logging.Formatter):
    """
    A logging formatter that outputs log records as JSON objects.

    Each record becomes one JSON object with ``timestamp``, ``level``,
    ``logger`` and ``message`` fields, plus anything passed via ``extra``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in set(record.__dict__.keys()) - _RESERVED_RECORD_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = True,
    stream: str = "stderr",
) -> logging.Logger:
    """
    Configure the logging system for the MCP server.

    Args:
        config: Optional LoggingConfig object. If provided, its format,
            stream and debug_mode settings override the keyword arguments.
        level: Log level (the server.log_level setting).
        json_format: Whether to use JSON formatting (default: True).
        stream: 'stderr' (default) or 'stdout'.

    Returns:
        The root logger configured for the mcp_pentest package.

    Example:
        >>> logger = setup_logging(level="DEBUG")
        >>> logger.info("Server started", extra={"port": 3000})
    """
    log_level = level.upper()
    if config is not None:
        json_format = config.json_format
        stream = config.stream
        if config.debug_mode:
            log_level = "DEBUG"

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level, logging.INFO))
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout if stream == "stdout" else sys.stderr)
    handler.setLevel(getattr(logging, log_level, logging.INFO))
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)

    # Prevent propagation to root logger to avoid duplicate logs
    logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: The name for the logger, typically __name__ of the calling module.
            The "mcp_pentest." prefix is added automatically if not present.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)
