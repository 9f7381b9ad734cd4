"""
Sessions and session management for the MCP pentest server.

A Session is one logical client connection: it owns a unique id, an outbound
message queue consumed by the HTTP event stream (or the stdio writer), the
set of in-flight requests, the client's negotiated capabilities, and its
audit store.

The SessionManager is the only owner of sessions. It is constructed once at
startup and passed explicitly to both transports.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections.abc import Coroutine
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from mcp_pentest.audit import DEFAULT_MAX_ITEMS, AuditStore
from mcp_pentest.errors import (
    InvalidStateError,
    ResourceExhaustedError,
    SessionNotFoundError,
    StreamConflictError,
)
from mcp_pentest.logging import get_logger
from mcp_pentest.protocol import JSONRPCNotification, Message

if TYPE_CHECKING:
    from mcp_pentest.config import AppConfig

logger = get_logger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_MAX_SESSIONS = 256

# Queued after close so every waiting consumer wakes up and stops
_CLOSED = object()


class SessionState(str, Enum):
    """Lifecycle states of a session."""

    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSED = "closed"


class Session:
    """
    A single logical client connection.

    Attributes:
        id: Opaque session identifier.
        created_at: Creation time (UTC).
        state: Current SessionState.
        protocol_version: Protocol version agreed during initialize.
        client_capabilities: Capabilities the client declared.
        client_info: Client name/version the client declared.
        audit: The session's AuditStore.
    """

    def __init__(
        self,
        session_id: str,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        audit_max_items: int = DEFAULT_MAX_ITEMS,
    ) -> None:
        self.id = session_id
        self.created_at = datetime.now(UTC)
        self.state = SessionState.INITIALIZING
        self.protocol_version: str | None = None
        self.client_capabilities: dict[str, Any] = {}
        self.client_info: dict[str, Any] = {}
        self.audit = AuditStore(max_items=audit_max_items, owner=session_id)
        self.dropped_messages = 0

        self._outbound: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size)
        self._in_flight: dict[str | int, asyncio.Future[Any]] = {}
        self._stream_token: object | None = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Session(id={self.id!r}, state={self.state.value!r})"

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    @property
    def is_closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def stream_attached(self) -> bool:
        return self._stream_token is not None

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def pending_count(self) -> int:
        """Number of messages waiting in the outbound queue."""
        return self._outbound.qsize()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def activate(
        self,
        protocol_version: str,
        client_capabilities: dict[str, Any] | None = None,
        client_info: dict[str, Any] | None = None,
    ) -> None:
        """
        Record the negotiated parameters and move to ACTIVE.

        Raises:
            InvalidStateError: If the session was already initialized.
            SessionNotFoundError: If the session is closed.
        """
        with self._lock:
            if self.state is SessionState.CLOSED:
                raise SessionNotFoundError(self.id)
            if self.state is SessionState.ACTIVE:
                raise InvalidStateError(
                    "Session is already initialized",
                    details={"session_id": self.id},
                )
            self.protocol_version = protocol_version
            self.client_capabilities = dict(client_capabilities or {})
            self.client_info = dict(client_info or {})
            self.state = SessionState.ACTIVE

    def close(self) -> bool:
        """
        Close the session.

        Cancels in-flight requests, discards undelivered messages and wakes the
        attached event stream so it can finish. Idempotent.

        Returns:
            True if this call closed the session, False if it was already closed.
        """
        with self._lock:
            if self.state is SessionState.CLOSED:
                return False
            self.state = SessionState.CLOSED
            in_flight = list(self._in_flight.values())

        for task in in_flight:
            task.cancel()

        while not self._outbound.empty():
            self._take_nowait()
        self._outbound.put_nowait(_CLOSED)
        return True

    # -------------------------------------------------------------------------
    # Outbound messages
    # -------------------------------------------------------------------------

    def enqueue(self, message: Message) -> bool:
        """
        Queue a message for delivery to the client.

        When the queue is full the oldest undelivered message is dropped.

        Returns:
            False if the session is closed and the message was discarded.
        """
        if self.is_closed:
            logger.debug(
                "Discarding message for closed session",
                extra={"session_id": self.id},
            )
            return False

        if self._outbound.full():
            self._take_nowait()
            self.dropped_messages += 1
            logger.warning(
                "Outbound queue full, dropped oldest message",
                extra={"session_id": self.id, "dropped_total": self.dropped_messages},
            )
        self._outbound.put_nowait(message)
        return True

    def send_notification(self, method: str, params: dict[str, Any] | None = None) -> bool:
        """Queue a server-initiated notification."""
        return self.enqueue(JSONRPCNotification(method=method, params=params))

    async def next_outbound(self, timeout: float | None = None) -> Message | None:
        """
        Wait for the next outbound message.

        Args:
            timeout: Seconds to wait; None waits indefinitely.

        Returns:
            The next message, or None once the session is closed.

        Raises:
            TimeoutError: If no message arrived within ``timeout``.
        """
        if timeout is None:
            item = await self._outbound.get()
        else:
            item = await asyncio.wait_for(self._outbound.get(), timeout)
        self._outbound.task_done()

        if item is _CLOSED:
            self._outbound.put_nowait(_CLOSED)
            return None
        return item

    async def flush(self) -> None:
        """Wait until every queued message has been taken by a consumer."""
        if not self.is_closed:
            await self._outbound.join()

    def _take_nowait(self) -> Any:
        item = self._outbound.get_nowait()
        self._outbound.task_done()
        return item

    def attach_stream(self) -> object:
        """
        Register the single event stream allowed for this session.

        Returns:
            An ownership token to pass to ``detach_stream``.

        Raises:
            SessionNotFoundError: If the session is closed.
            StreamConflictError: If a stream is already attached.
        """
        with self._lock:
            if self.state is SessionState.CLOSED:
                raise SessionNotFoundError(self.id)
            if self._stream_token is not None:
                raise StreamConflictError(self.id)
            self._stream_token = object()
            return self._stream_token

    def detach_stream(self, token: object) -> bool:
        """
        Release the event stream slot held by ``token``.

        A stale token (from a stream that was already replaced) is ignored.
        """
        with self._lock:
            if self._stream_token is not token:
                return False
            self._stream_token = None
            return True

    # -------------------------------------------------------------------------
    # In-flight requests
    # -------------------------------------------------------------------------

    async def run_request(
        self, request_id: str | int, coro: Coroutine[Any, Any, Any]
    ) -> Any | None:
        """
        Run one request as a tracked task.

        The task can be cancelled by ``cancel_request`` (client cancellation)
        or by ``close``.

        Returns:
            The coroutine's result, or None if the client cancelled the request.

        Raises:
            SessionNotFoundError: If the session is (or becomes) closed.
            InvalidStateError: If a request with the same id is in flight.
        """
        with self._lock:
            if self.state is SessionState.CLOSED:
                coro.close()
                raise SessionNotFoundError(self.id)
            if request_id in self._in_flight:
                coro.close()
                raise InvalidStateError(
                    "A request with this id is already in flight",
                    details={"request_id": request_id},
                )
            task = asyncio.ensure_future(coro)
            self._in_flight[request_id] = task

        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            if self.is_closed:
                raise SessionNotFoundError(self.id) from None
            logger.info(
                "Request cancelled by client",
                extra={"session_id": self.id, "request_id": request_id},
            )
            return None
        finally:
            with self._lock:
                if self._in_flight.get(request_id) is task:
                    del self._in_flight[request_id]

    def cancel_request(self, request_id: str | int) -> bool:
        """Cancel an in-flight request. Returns whether one was found."""
        with self._lock:
            task = self._in_flight.get(request_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True


class SessionManager:
    """
    Creates, looks up and closes sessions.

    All operations are safe for concurrent callers. The id map is guarded by a
    lock that is never held across an await. Closed sessions are dropped from
    the map rather than remembered; ids are random UUID4 values and a new id
    is only checked against live sessions, so a closed id is never resolved
    and memory stays bounded by the session limit.

    Example:
        >>> manager = SessionManager()
        >>> session = manager.create_session()
        >>> manager.get_session(session.id) is session
        True
    """

    def __init__(
        self,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        audit_max_items: int = DEFAULT_MAX_ITEMS,
    ) -> None:
        self._max_sessions = max_sessions
        self._queue_size = queue_size
        self._audit_max_items = audit_max_items
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: AppConfig) -> SessionManager:
        return cls(
            max_sessions=config.sessions.max_sessions,
            queue_size=config.sessions.outbound_queue_size,
            audit_max_items=config.audit.max_items,
        )

    def create_session(self) -> Session:
        """
        Create and register a new session in the INITIALIZING state.

        Raises:
            ResourceExhaustedError: If the session limit is reached.
        """
        with self._lock:
            if len(self._sessions) >= self._max_sessions:
                raise ResourceExhaustedError(
                    "Session limit reached",
                    details={"max_sessions": self._max_sessions},
                )
            session_id = str(uuid.uuid4())
            while session_id in self._sessions:
                session_id = str(uuid.uuid4())
            session = Session(
                session_id,
                queue_size=self._queue_size,
                audit_max_items=self._audit_max_items,
            )
            self._sessions[session_id] = session

        logger.info("Session created", extra={"session_id": session_id})
        return session

    def get_session(self, session_id: str | None) -> Session:
        """
        Look up a live session.

        Raises:
            SessionNotFoundError: If the id is missing, unknown or closed.
        """
        if not session_id:
            raise SessionNotFoundError(session_id)
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None or session.is_closed:
            raise SessionNotFoundError(session_id)
        return session

    def close_session(self, session_id: str | None) -> bool:
        """
        Close and forget a session. Idempotent.

        Returns:
            True if a live session was closed by this call.
        """
        if not session_id:
            return False
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False

        closed = session.close()
        logger.info(
            "Session closed",
            extra={"session_id": session_id, "audit_items": len(session.audit)},
        )
        return closed

    def close_all(self) -> int:
        """Close every live session. Returns the number closed."""
        with self._lock:
            session_ids = list(self._sessions)
        return sum(1 for session_id in session_ids if self.close_session(session_id))

    def sessions(self) -> list[Session]:
        """Snapshot of live sessions."""
        with self._lock:
            return list(self._sessions.values())

    def audit_item_count(self) -> int:
        return sum(len(session.audit) for session in self.sessions())

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
