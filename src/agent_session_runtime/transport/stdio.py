"""stdio transport.

Serves the protocol to a single parent process over stdin/stdout.

Wire format (newline-delimited JSON, UTF-8 encoded):
- Input (stdin):  one Command or extension_ui_response per line
- Output (stdout): Responses and broadcast events, one per line

Cross-platform considerations:
- All JSON is UTF-8 encoded (no BOM)
- Newlines are always LF (\\n), never CRLF
- Input accepts both LF and CRLF (normalized to LF)
"""

from __future__ import annotations

import asyncio
import io
import logging
import sys
from typing import TYPE_CHECKING, BinaryIO

from .hub import ClientConnection

if TYPE_CHECKING:
    from ..server import ProtocolServer

logger = logging.getLogger(__name__)

ENCODING = "utf-8"
NEWLINE = "\n"


class StdioConnection(ClientConnection):
    """The single connection of a stdio server, writing JSON lines."""

    def __init__(self, stdout: BinaryIO | None = None) -> None:
        super().__init__("stdio")
        self._writer = io.TextIOWrapper(
            stdout if stdout is not None else sys.stdout.buffer,
            encoding=ENCODING,
            errors="replace",
            newline=NEWLINE,
            write_through=True,
        )

    async def _write(self, text: str) -> None:
        self._writer.write(text + NEWLINE)
        self._writer.flush()


class StdioServer:
    """Reads frames from stdin and feeds them to a protocol server.

    Usage:
        stdio = StdioServer(server)
        await stdio.run()  # Returns when stdin closes
    """

    def __init__(
        self,
        server: ProtocolServer,
        stdin: BinaryIO | None = None,
        stdout: BinaryIO | None = None,
    ) -> None:
        self._server = server
        self._reader = io.TextIOWrapper(
            stdin if stdin is not None else sys.stdin.buffer,
            encoding=ENCODING,
            errors="replace",
            newline="",
        )
        self.connection = StdioConnection(stdout)

    async def run(self) -> None:
        """Process stdin until EOF, then wait for in-flight commands and flush."""
        self._server.hub.add(self.connection)
        pending: set[asyncio.Task[None]] = set()
        try:
            while True:
                line = await self._read_line()
                if line is None:
                    break

                line = line.strip()
                if line.startswith("\ufeff"):
                    line = line[1:]
                if not line:
                    continue

                task = self._server.handle_frame(self.connection, line)
                if task is not None:
                    pending.add(task)
                    task.add_done_callback(pending.discard)

            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        finally:
            logger.info("stdin closed")
            await self.connection.close()
            self._server.hub.remove(self.connection)

    async def _read_line(self) -> str | None:
        loop = asyncio.get_running_loop()
        line = await loop.run_in_executor(None, self._reader.readline)
        return line or None
