"""
Tests for the logging module.

This test module validates:
- JSON-formatted structured logging output
- Logger configuration and setup
- Log level handling and debug mode
- Output stream selection
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from io import StringIO

import pytest

from mcp_pentest.config import LoggingConfig
from mcp_pentest.logging import ROOT_LOGGER_NAME, JSONFormatter, get_logger, setup_logging

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def string_handler() -> logging.StreamHandler[StringIO]:
    """Create a string handler for capturing log output."""
    handler = logging.StreamHandler(StringIO())
    handler.setFormatter(JSONFormatter())
    return handler


@pytest.fixture(autouse=True)
def _cleanup_loggers() -> Iterator[None]:
    yield
    logging.getLogger(ROOT_LOGGER_NAME).handlers.clear()


def make_record(msg: str = "Test", level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test_logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_basic_fields(self) -> None:
        parsed = json.loads(JSONFormatter().format(make_record("Session created")))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test_logger"
        assert parsed["message"] == "Session created"
        assert parsed["timestamp"].endswith("+00:00")

    def test_extra_fields(self) -> None:
        record = make_record("Request completed")
        record.session_id = "abc"
        record.duration_ms = 1.5

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["session_id"] == "abc"
        assert parsed["duration_ms"] == 1.5

    def test_none_extras_omitted(self) -> None:
        record = make_record()
        record.request_id = None

        assert "request_id" not in json.loads(JSONFormatter().format(record))

    def test_exception(self) -> None:
        try:
            raise ValueError("Test error")
        except ValueError:
            exc_info = sys.exc_info()

        parsed = json.loads(JSONFormatter().format(make_record("failed", logging.ERROR, exc_info)))

        assert "ValueError: Test error" in parsed["exception"]

    def test_unserializable_extra(self) -> None:
        record = make_record()
        record.payload = object()

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["payload"].startswith("<object object")


# =============================================================================
# Tests for setup_logging
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self) -> None:
        logger = setup_logging()

        assert logger.name == ROOT_LOGGER_NAME
        assert logger.propagate is False

    @pytest.mark.parametrize(
        ("level", "expected"),
        [("debug", logging.DEBUG), ("warning", logging.WARNING), ("ERROR", logging.ERROR)],
    )
    def test_sets_level(self, level: str, expected: int) -> None:
        assert setup_logging(level=level).level == expected

    def test_json_by_default(self) -> None:
        logger = setup_logging()

        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_plain_format(self) -> None:
        logger = setup_logging(json_format=False)

        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_repeated_setup_does_not_add_handlers(self) -> None:
        setup_logging()
        logger = setup_logging()

        assert len(logger.handlers) == 1

    def test_stderr_default(self) -> None:
        logger = setup_logging()

        assert logger.handlers[0].stream is sys.stderr

    def test_config_overrides_keywords(self) -> None:
        config = LoggingConfig(stream="stdout", json_format=False, debug_mode=True)

        logger = setup_logging(config, level="error", json_format=True, stream="stderr")

        assert logger.level == logging.DEBUG
        assert logger.handlers[0].stream is sys.stdout
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_config_without_debug_keeps_level(self) -> None:
        logger = setup_logging(LoggingConfig(), level="warning")

        assert logger.level == logging.WARNING


# =============================================================================
# Tests for get_logger
# =============================================================================


class TestGetLogger:
    """Tests for get_logger function."""

    def test_adds_prefix(self) -> None:
        assert get_logger("transports.http").name == "mcp_pentest.transports.http"

    def test_does_not_duplicate_prefix(self) -> None:
        assert get_logger("mcp_pentest.session").name == "mcp_pentest.session"

    def test_child_inherits_level(self) -> None:
        setup_logging(level="DEBUG")

        assert get_logger("config").getEffectiveLevel() == logging.DEBUG

    def test_child_output_reaches_handler(
        self, string_handler: logging.StreamHandler[StringIO]
    ) -> None:
        logger = setup_logging(level="INFO")
        logger.handlers[:] = [string_handler]

        get_logger("session").info("Session closed", extra={"session_id": "s1"})

        parsed = json.loads(string_handler.stream.getvalue().strip())
        assert parsed["logger"] == "mcp_pentest.session"
        assert parsed["session_id"] == "s1"
