"""
JSON-RPC 2.0 message codec for the MCP pentest server.

This module decodes raw bytes into typed JSON-RPC messages, validates the
envelope shape, and encodes server-constructed messages back to bytes.

Features:
- Decoding of requests, notifications, and client responses
- Envelope validation (jsonrpc marker, id type, method, params shape)
- Compact encoding that never fails for server-built values
- ToolError to JSON-RPC error code mapping

Error Code Mapping:
- -32700: Parse error (malformed JSON or non UTF-8 bytes)
- -32600: Invalid Request (wrong envelope shape)
- -32601: Method not found (unknown method, tool, resource, or prompt)
- -32602: Invalid params (argument validation failed)
- -32603: Internal error
- -32000: Server error (session routing and lifecycle problems)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union

from mcp_pentest.errors import ToolError

# =============================================================================
# JSON-RPC Error Codes
# =============================================================================

JSONRPC_VERSION = "2.0"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SERVER_ERROR = -32000

ERROR_CODE_MAP: dict[str, int] = {
    "invalid_argument": INVALID_PARAMS,
    "not_found": METHOD_NOT_FOUND,
    "invalid_state": SERVER_ERROR,
    "session_not_found": SERVER_ERROR,
    "stream_conflict": SERVER_ERROR,
    "resource_exhausted": SERVER_ERROR,
    "internal": INTERNAL_ERROR,
}


# =============================================================================
# Data Classes
# =============================================================================


class JSONRPCError(Exception):
    """
    Represents a JSON-RPC 2.0 error object.

    This class is both an Exception (so it can be raised) and a data container
    for JSON-RPC error information.

    Attributes:
        code: Integer JSON-RPC 2.0 error code.
        message: Human-readable error message.
        data: Optional structured error data.
    """

    def __init__(
        self,
        code: int,
        message: str,
        data: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for JSON serialization.

        Returns:
            Dictionary with code, message, and optionally data.
        """
        result: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.data is not None:
            result["data"] = self.data
        return result

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"JSONRPCError(code={self.code}, "
            f"message={self.message!r}, "
            f"data={self.data!r})"
        )


class DecodeError(JSONRPCError):
    """
    A structurally invalid payload.

    ``request_id`` holds the id of the offending message when it could be
    recovered; transports use it to decide whether a reply is possible.
    """

    def __init__(
        self,
        code: int,
        message: str,
        request_id: str | int | None = None,
    ) -> None:
        super().__init__(code, message)
        self.request_id = request_id


@dataclass
class JSONRPCRequest:
    """
    A JSON-RPC 2.0 request that awaits exactly one response.

    Attributes:
        id: Request identifier (string or integer).
        method: The method to invoke.
        params: Parameters object, or None when the field was absent.
    """

    id: str | int
    method: str
    params: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
        }
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass
class JSONRPCNotification:
    """A JSON-RPC 2.0 notification (no id, no response)."""

    method: str
    params: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            data["params"] = self.params
        return data


@dataclass
class JSONRPCResponse:
    """
    Represents a JSON-RPC 2.0 response.

    Either result or error must be present, but not both.

    Attributes:
        id: Request identifier (matches request, or null for parse errors).
        result: Success result (if not an error).
        error: Error object (if an error occurred).
    """

    id: str | int | None
    result: Any | None = None
    error: JSONRPCError | None = None

    @property
    def is_error(self) -> bool:
        """Check if this is an error response."""
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the response to a dictionary for JSON serialization.

        Returns:
            Dictionary with jsonrpc, id, and either result or error.
        """
        response: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
        }
        if self.error is not None:
            response["error"] = self.error.to_dict()
        else:
            response["result"] = self.result
        return response

    def to_json(self) -> str:
        """Serialize the response to a compact JSON string."""
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)


Message = Union[JSONRPCRequest, JSONRPCNotification, JSONRPCResponse]


# =============================================================================
# Decoding
# =============================================================================


def _is_valid_id(value: Any) -> bool:
    # bool is an int subclass and is not a valid id
    return isinstance(value, str) or (
        isinstance(value, int) and not isinstance(value, bool)
    )


def _decode_error_object(data: Any, request_id: str | int | None) -> JSONRPCError:
    if (
        not isinstance(data, dict)
        or not isinstance(data.get("code"), int)
        or not isinstance(data.get("message"), str)
    ):
        raise DecodeError(
            INVALID_REQUEST,
            "Invalid Request: 'error' must be an object with integer code and string message",
            request_id,
        )
    return JSONRPCError(data["code"], data["message"], data.get("data"))


def decode_message(raw: bytes | str) -> Message:
    """
    Decode one JSON-RPC 2.0 message.

    Args:
        raw: Raw message bytes (UTF-8) or an already decoded string.

    Returns:
        A JSONRPCRequest, JSONRPCNotification, or JSONRPCResponse.

    Raises:
        DecodeError: If the payload is not valid JSON (-32700) or the envelope
            is malformed (-32600).

    Example:
        >>> msg = decode_message(b'{"jsonrpc":"2.0","id":1,"method":"ping"}')
        >>> msg.method
        'ping'
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(
                PARSE_ERROR, "Parse error: Invalid request encoding, UTF-8 required"
            ) from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DecodeError(PARSE_ERROR, f"Parse error: Invalid JSON - {e.msg}") from e

    if isinstance(data, list):
        raise DecodeError(INVALID_REQUEST, "Invalid Request: batch messages are not supported")
    if not isinstance(data, dict):
        raise DecodeError(INVALID_REQUEST, "Invalid Request: Request must be a JSON object")

    has_id = "id" in data
    raw_id = data.get("id")
    request_id = raw_id if _is_valid_id(raw_id) else None

    jsonrpc = data.get("jsonrpc")
    if jsonrpc is None:
        raise DecodeError(INVALID_REQUEST, "Invalid Request: Missing 'jsonrpc' field", request_id)
    if jsonrpc != JSONRPC_VERSION:
        raise DecodeError(
            INVALID_REQUEST,
            f"Invalid Request: jsonrpc must be '2.0', got '{jsonrpc}'",
            request_id,
        )

    if "method" not in data:
        return _decode_response(data, has_id, raw_id, request_id)

    method = data["method"]
    if not isinstance(method, str) or not method:
        raise DecodeError(
            INVALID_REQUEST,
            "Invalid Request: 'method' must be a non-empty string",
            request_id,
        )

    params = data.get("params")
    if "params" in data and not isinstance(params, dict):
        raise DecodeError(
            INVALID_REQUEST,
            "Invalid Request: 'params' must be an object",
            request_id,
        )

    if not has_id:
        return JSONRPCNotification(method=method, params=params)
    if request_id is None:
        raise DecodeError(
            INVALID_REQUEST,
            "Invalid Request: 'id' must be a string or an integer",
        )
    return JSONRPCRequest(id=request_id, method=method, params=params)


def _decode_response(
    data: dict[str, Any],
    has_id: bool,
    raw_id: Any,
    request_id: str | int | None,
) -> JSONRPCResponse:
    has_result = "result" in data
    has_error = "error" in data
    if not has_result and not has_error:
        raise DecodeError(INVALID_REQUEST, "Invalid Request: Missing 'method' field", request_id)
    if has_result and has_error:
        raise DecodeError(
            INVALID_REQUEST,
            "Invalid Request: response must not carry both 'result' and 'error'",
            request_id,
        )
    if not has_id or (raw_id is not None and request_id is None):
        raise DecodeError(INVALID_REQUEST, "Invalid Request: response requires a valid 'id'")
    if has_error:
        return JSONRPCResponse(id=request_id, error=_decode_error_object(data["error"], request_id))
    return JSONRPCResponse(id=request_id, result=data["result"])


# =============================================================================
# Encoding
# =============================================================================


def encode_message(message: Message) -> bytes:
    """
    Encode a message as compact UTF-8 JSON.

    Values the json module cannot represent natively (datetimes, paths) are
    stringified, so encoding server-built messages never fails.
    """
    return json.dumps(message.to_dict(), separators=(",", ":"), default=str).encode(
        "utf-8"
    )


# =============================================================================
# Response Formatting
# =============================================================================


def format_success_response(
    request_id: str | int | None,
    result: Any,
) -> JSONRPCResponse:
    """
    Format a successful JSON-RPC 2.0 response.

    Example:
        >>> format_success_response("req-1", {}).to_json()
        '{"jsonrpc":"2.0","id":"req-1","result":{}}'
    """
    return JSONRPCResponse(id=request_id, result=result)


def format_error_response(
    request_id: str | int | None,
    error: JSONRPCError,
) -> JSONRPCResponse:
    """Format a JSON-RPC 2.0 error response."""
    return JSONRPCResponse(id=request_id, error=error)


# =============================================================================
# ToolError to JSON-RPC Error Mapping
# =============================================================================


def tool_error_to_jsonrpc_error(tool_error: ToolError) -> JSONRPCError:
    """
    Convert a ToolError to a JSONRPCError.

    Args:
        tool_error: The ToolError to convert.

    Returns:
        JSONRPCError with the mapped code and structured data.

    Example:
        >>> from mcp_pentest.errors import InvalidArgumentError
        >>> tool_error_to_jsonrpc_error(InvalidArgumentError("bad")).code
        -32602
    """
    jsonrpc_code = ERROR_CODE_MAP.get(tool_error.error_code, SERVER_ERROR)
    return JSONRPCError(
        code=jsonrpc_code,
        message=tool_error.message,
        data=tool_error.to_dict(),
    )


def create_session_error(message: str) -> JSONRPCError:
    """Create the -32000 error used for session routing failures."""
    return JSONRPCError(code=SERVER_ERROR, message=message)


def create_internal_error(
    message: str, details: dict[str, Any] | None = None
) -> JSONRPCError:
    """
    Create an internal error for unexpected exceptions.

    Returns:
        JSONRPCError with code -32603.
    """
    return JSONRPCError(
        code=INTERNAL_ERROR,
        message=message,
        data={
            "error_code": "internal",
            "message": message,
            "details": details or {},
        },
    )
