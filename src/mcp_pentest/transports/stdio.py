"""
Stream transport: newline-delimited JSON-RPC over stdin/stdout.

The process has exactly one implicit session, created when the transport
starts and closed at end of input. Each request is dispatched as its own
task, so responses are written in completion order, not arrival order. A
single writer task drains the session's outbound queue, which carries both
responses and server-initiated notifications.
"""

from __future__ import annotations

import asyncio
import sys
from typing import TYPE_CHECKING, TextIO

from mcp_pentest.errors import ToolError
from mcp_pentest.logging import get_logger
from mcp_pentest.protocol import (
    DecodeError,
    Message,
    decode_message,
    encode_message,
    format_error_response,
)

if TYPE_CHECKING:
    from mcp_pentest.dispatcher import RequestDispatcher
    from mcp_pentest.session import Session, SessionManager

logger = get_logger(__name__)

# Longest accepted input line
STREAM_LIMIT = 16 * 1024 * 1024

EXIT_OK = 0
EXIT_FATAL = 1


class StdioTransport:
    """
    Serves one client over the process's standard streams.

    Example:
        >>> transport = StdioTransport(dispatcher, session_manager)
        >>> exit_code = await transport.run()

    Attributes:
        running: Whether the read loop is active.
        session: The implicit session, once started.
    """

    def __init__(
        self,
        dispatcher: RequestDispatcher,
        session_manager: SessionManager,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        reader: asyncio.StreamReader | None = None,
    ) -> None:
        """
        Initialize the transport.

        Args:
            dispatcher: RequestDispatcher shared with other transports.
            session_manager: SessionManager that owns the implicit session.
            stdin: Input pipe. Uses sys.stdin if neither stdin nor reader is given.
            stdout: Output stream. Uses sys.stdout if not provided.
            reader: Pre-built StreamReader (used instead of connecting stdin).
        """
        self.dispatcher = dispatcher
        self.session_manager = session_manager
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self._reader = reader
        self._tasks: set[asyncio.Task[None]] = set()
        self._write_failed = False
        self.running = False
        self.session: Session | None = None

    async def _connect_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=STREAM_LIMIT)
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, self._stdin)
        return reader

    async def run(self) -> int:
        """
        Serve until end of input.

        Returns:
            0 after a clean shutdown, 1 if the transport could not start or
            stdout stopped accepting writes.
        """
        try:
            session = self.session_manager.create_session()
            reader = self._reader if self._reader is not None else await self._connect_stdin()
        except (ToolError, OSError, ValueError) as e:
            logger.error("Stdio transport failed to start", extra={"error": str(e)})
            return EXIT_FATAL

        self.session = session
        self.running = True
        writer = asyncio.create_task(self._write_loop(session))
        logger.info("Stdio transport started", extra={"session_id": session.id})

        try:
            while self.running:
                try:
                    line = await reader.readline()
                except (ValueError, OSError) as e:
                    logger.error("Error reading from stdin", extra={"error": str(e)})
                    break
                if not line:
                    break

                line = line.strip()
                if line:
                    self._accept(session, line)

            # Requests already read still get their responses
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            if not writer.done():
                flushed = asyncio.create_task(session.flush())
                # A failed writer closes the session, which never finishes the flush
                try:
                    await asyncio.wait({writer, flushed}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    flushed.cancel()
        finally:
            self.running = False
            self.session_manager.close_session(session.id)
            await writer
            logger.info("Stdio transport stopped", extra={"session_id": session.id})

        return EXIT_FATAL if self._write_failed else EXIT_OK

    def stop(self) -> None:
        """Stop reading after the current line."""
        self.running = False

    def _accept(self, session: Session, line: bytes) -> None:
        try:
            message = decode_message(line)
        except DecodeError as e:
            if e.request_id is None:
                logger.warning(
                    "Skipping malformed line",
                    extra={"session_id": session.id, "error": e.message},
                )
                return
            session.enqueue(format_error_response(e.request_id, e))
            return

        task = asyncio.create_task(self._process(session, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, session: Session, message: Message) -> None:
        response = await self.dispatcher.dispatch(session, message)
        if response is not None:
            session.enqueue(response)

    async def _write_loop(self, session: Session) -> None:
        while True:
            message = await session.next_outbound()
            if message is None:
                return
            try:
                self._write(encode_message(message).decode("utf-8"))
            except OSError as e:
                logger.error(
                    "Error writing to stdout",
                    extra={"session_id": session.id, "error": str(e)},
                )
                self._write_failed = True
                self.running = False
                self.session_manager.close_session(session.id)
                return

    def _write(self, line: str) -> None:
        self._stdout.write(line + "\n")
        self._stdout.flush()
