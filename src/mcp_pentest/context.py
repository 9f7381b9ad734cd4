"""
Handler context for the MCP pentest server.

This module defines the ToolContext dataclass handed to every tool, resource
and prompt handler. It carries the request metadata and gives handlers the
two side channels they are allowed to use: the session's audit store and
server-initiated notifications.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_pentest.audit import AuditStore
    from mcp_pentest.session import Session


@dataclass
class ToolContext:
    """
    Encapsulates the context of a single capability invocation.

    Attributes:
        name: Tool/prompt name or resource URI being invoked.
        session: The session the request belongs to.
        request_id: JSON-RPC request identifier.
        timestamp: When the request was received (UTC).
        metadata: The request's ``_meta`` object, if any.
    """

    name: str
    session: Session
    request_id: str | int | None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def audit(self) -> AuditStore:
        """The audit store of the owning session."""
        return self.session.audit

    @property
    def progress_token(self) -> str | int | None:
        return self.metadata.get("progressToken")

    def notify(self, method: str, params: dict[str, Any] | None = None) -> bool:
        """
        Send a server-initiated notification to the client.

        Returns:
            False if the session has closed and the notification was dropped.
        """
        return self.session.send_notification(method, params)

    def log(self, level: str, data: Any) -> bool:
        """Send a ``notifications/message`` log notification."""
        return self.notify(
            "notifications/message",
            {"level": level, "logger": self.name, "data": data},
        )

    def report_progress(self, progress: float, total: float | None = None) -> bool:
        """Send ``notifications/progress`` if the client asked for progress."""
        if self.progress_token is None:
            return False
        params: dict[str, Any] = {"progressToken": self.progress_token, "progress": progress}
        if total is not None:
            params["total"] = total
        return self.notify("notifications/progress", params)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert ToolContext to a dictionary for logging.

        Returns:
            Dictionary with context information.
        """
        return {
            "name": self.name,
            "session_id": self.session.id,
            "request_id": self.request_id,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }
