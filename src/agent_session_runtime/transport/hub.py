"""Connection hub: unicast and broadcast over any number of client connections.

Each connection owns a FIFO queue drained by its own writer task, so
`send` never blocks the caller and every connection observes messages in the
order they were submitted. A slow connection only delays itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str, int], None]

_CLOSE = None


def _json_default(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_message(obj: Any) -> str:
    """Encode one outbound message as a JSON text frame."""
    return json.dumps(obj, default=_json_default, ensure_ascii=False)


class ClientConnection(ABC):
    """One attached client.

    Subclasses implement `_write` for their medium. Everything else
    (queueing, ordering, closed-connection drops) lives here.
    """

    def __init__(self, connection_id: str | None = None) -> None:
        self.connection_id = connection_id or f"conn_{uuid.uuid4().hex[:12]}"
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._writer_task: asyncio.Task[None] | None = None
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    @abstractmethod
    async def _write(self, text: str) -> None:
        """Deliver one encoded frame to the peer."""

    def start(self) -> None:
        """Start the writer task. Must be called from a running loop."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._drain())

    def send(self, obj: Any) -> bool:
        """Queue one message. Returns False if it was dropped."""
        try:
            text = encode_message(obj)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping unserializable message for {self.connection_id}: {e}")
            return False
        return self.send_text(text)

    def send_text(self, text: str) -> bool:
        """Queue an already encoded frame. Returns False if it was dropped."""
        if not self._open:
            logger.debug(f"Dropping message for closed connection {self.connection_id}")
            return False
        self._queue.put_nowait(text)
        return True

    async def _drain(self) -> None:
        while True:
            text = await self._queue.get()
            if text is _CLOSE:
                return
            try:
                await self._write(text)
            except Exception as e:
                logger.debug(f"Write failed on {self.connection_id}: {e}")
                self._open = False
                return

    def mark_closed(self) -> None:
        """Stop immediately, discarding queued messages. Used when the peer is gone."""
        self._open = False
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()

    async def close(self) -> None:
        """Stop accepting messages and flush what is already queued."""
        if not self._open and self._writer_task is None:
            return
        self._open = False
        self._queue.put_nowait(_CLOSE)
        if self._writer_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer_task


class ConnectionHub:
    """Tracks live connections and fans messages out to them.

    `broadcast` reaches every open connection, including the one whose
    command triggered it. Deduplication is left to clients.
    """

    def __init__(self) -> None:
        self._connections: dict[str, ClientConnection] = {}
        self._listeners: list[ChangeListener] = []

    @property
    def client_count(self) -> int:
        return len(self._connections)

    @property
    def connections(self) -> list[ClientConnection]:
        return list(self._connections.values())

    def add(self, connection: ClientConnection) -> None:
        """Register a connection that passed access control and start its writer."""
        connection.start()
        self._connections[connection.connection_id] = connection
        logger.info(f"Client connected: {connection.connection_id} (clients: {self.client_count})")
        self._notify("connect")

    def remove(self, connection: ClientConnection) -> None:
        """Forget a connection. Pending unicasts to it are dropped."""
        if self._connections.pop(connection.connection_id, None) is None:
            return
        connection.mark_closed()
        logger.info(f"Client disconnected: {connection.connection_id} (clients: {self.client_count})")
        self._notify("disconnect")

    def send(self, connection: ClientConnection, obj: Any) -> bool:
        """Unicast to one connection."""
        return connection.send(obj)

    def broadcast(self, obj: Any) -> int:
        """Send to every open connection.

        Returns:
            Number of connections the message was queued for
        """
        try:
            text = encode_message(obj)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping unserializable broadcast: {e}")
            return 0

        count = 0
        for connection in list(self._connections.values()):
            if connection.send_text(text):
                count += 1
        return count

    def on_change(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a listener called with ("connect" | "disconnect", client_count).

        Returns:
            Function that unregisters the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(change, self.client_count)
            except Exception as e:
                logger.exception(f"Connection listener failed: {e}")

    async def close_all(self) -> None:
        """Flush and close every connection."""
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            await connection.close()
