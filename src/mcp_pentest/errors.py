"""
Error types for the MCP pentest server.

This module defines the ToolError base class and the closed set of subclasses
used across the server. Internal failures should be expressed with one of
these classes instead of building JSON-RPC error objects directly; the
protocol layer maps each ``error_code`` to exactly one JSON-RPC code.

Application failures inside a tool handler are NOT represented here: they are
reported as successful responses carrying ``isError: true``.
"""

from __future__ import annotations

from typing import Any


class ToolError(Exception):
    """
    Base exception class for protocol-level server errors.

    ToolError instances are caught at the dispatch layer and mapped to
    JSON-RPC error responses using ``mcp_pentest.protocol.ERROR_CODE_MAP``.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "not_found", "invalid_state", "session_not_found", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise ToolError(
        ...     error_code="invalid_argument",
        ...     message="filePath is required",
        ...     details={"field": "filePath"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a ToolError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(ToolError):
    """
    Error raised when request parameters fail validation.

    Maps to JSON-RPC -32602 (Invalid params).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class MethodNotFoundError(ToolError):
    """
    Error raised for an unknown method, tool, resource, or prompt.

    Maps to JSON-RPC -32601 (Method not found).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MethodNotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class InvalidStateError(ToolError):
    """
    Error raised when the session is in the wrong state for a request.

    A second ``initialize`` on an already active session is the typical case.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidStateError."""
        super().__init__(error_code="invalid_state", message=message, details=details)


class SessionNotFoundError(ToolError):
    """Error raised when a session id is unknown or already closed."""

    def __init__(self, session_id: str | None) -> None:
        """Initialize a SessionNotFoundError."""
        super().__init__(
            error_code="session_not_found",
            message="Session not found",
            details={"session_id": session_id},
        )
        self.session_id = session_id


class StreamConflictError(ToolError):
    """Error raised when a second event stream is opened for one session."""

    def __init__(self, session_id: str) -> None:
        """Initialize a StreamConflictError."""
        super().__init__(
            error_code="stream_conflict",
            message="An event stream is already open for this session",
            details={"session_id": session_id},
        )


class ResourceExhaustedError(ToolError):
    """
    Error raised when the server cannot allocate a resource.

    Used when the session limit is reached.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ResourceExhaustedError."""
        super().__init__(
            error_code="resource_exhausted", message=message, details=details
        )


class InternalError(ToolError):
    """
    Error raised for unexpected internal errors.

    This error maps to the "internal" error code and should be used for
    unexpected exceptions that should be logged with full stack traces.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
