"""Client-side transports for the session protocol.

Architecture:
- ClientTransport is the PROTOCOL (interface) for all client transports
- BaseClientTransport implements request/response correlation, listener
  fan-out and connection state once
- Implementations only move JSON frames (WebSocket, in-process loopback)

Every inbound frame, Responses included, reaches the event listeners. A
Response whose `id` matches an outstanding request additionally resolves
that request.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets

from ..config import DEFAULT_REQUEST_TIMEOUT, RuntimeConfig
from ..errors import RequestTimeoutError, TransportClosedError
from ..protocol.commands import Command
from ..transport.hub import ClientConnection, encode_message

if TYPE_CHECKING:
    from ..server import ProtocolServer

logger = logging.getLogger(__name__)

FrameListener = Callable[[dict[str, Any]], None]
StatusListener = Callable[[bool], None]


class TransportState(str, Enum):
    """Connection state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


@dataclass
class ClientTransportConfig:
    """Configuration for client transports."""

    url: str = "ws://localhost:4096/ws"
    token: str | None = None
    origin: str | None = None
    timeout: float = DEFAULT_REQUEST_TIMEOUT

    @classmethod
    def from_runtime_config(cls, config: RuntimeConfig) -> ClientTransportConfig:
        """Point at the server `config` describes, with its request timeout."""
        return cls(
            url=f"ws://{config.client_host}:{config.port}/ws",
            token=config.token,
            timeout=config.request_timeout,
        )


@runtime_checkable
class ClientTransport(Protocol):
    """Protocol for SDK client transports."""

    @property
    def state(self) -> TransportState: ...

    @property
    def is_connected(self) -> bool: ...

    async def connect(self) -> None:
        """Establish the connection.

        Raises:
            ConnectionError: If connection fails
        """
        ...

    async def disconnect(self) -> None: ...

    async def request(self, command: Command) -> dict[str, Any]:
        """Send a command and wait for its Response frame.

        Raises:
            TransportClosedError: If not connected or the connection drops
            RequestTimeoutError: If no Response arrives within the timeout
        """
        ...

    async def send(self, obj: dict[str, Any]) -> None:
        """Send a frame without waiting for anything."""
        ...

    def add_listener(self, listener: FrameListener) -> Callable[[], None]: ...

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]: ...


def _subscribe(listeners: list[Any], listener: Any) -> Callable[[], None]:
    listeners.append(listener)

    def unsubscribe() -> None:
        with contextlib.suppress(ValueError):
            listeners.remove(listener)

    return unsubscribe


class BaseClientTransport(ABC):
    """Base class for client transports with common functionality.

    Provides:
    - State management and status notifications
    - `req_<n>` ids for commands sent without one
    - Response correlation with a per-request timeout
    - Rejection of all outstanding requests when the connection goes away
    """

    def __init__(self, config: ClientTransportConfig | None = None) -> None:
        self.config = config or ClientTransportConfig()
        self._state = TransportState.DISCONNECTED
        self._pending: dict[str, asyncio.Future[dict[str, Any]]] = {}
        self._listeners: list[FrameListener] = []
        self._status_listeners: list[StatusListener] = []
        self._request_counter = 0
        self._reader_task: asyncio.Task[None] | None = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == TransportState.CONNECTED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def connect(self) -> None:
        """Establish connection."""
        async with self._lock:
            if self._state == TransportState.CONNECTED:
                return

            self._state = TransportState.CONNECTING
            try:
                await self._do_connect()
            except Exception as e:
                self._state = TransportState.DISCONNECTED
                raise ConnectionError(f"Failed to connect: {e}") from e

            self._state = TransportState.CONNECTED
            self._reader_task = asyncio.create_task(self._read_loop())
            logger.info(f"{self.__class__.__name__} connected")
        self._notify_status(True)

    async def disconnect(self) -> None:
        """Close the connection and reject outstanding requests."""
        async with self._lock:
            if self._state in (TransportState.DISCONNECTED, TransportState.CLOSED):
                return

            self._state = TransportState.CLOSED

            if self._reader_task:
                self._reader_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._reader_task
                self._reader_task = None

            self._fail_pending(TransportClosedError("Transport disconnected"))
            await self._do_disconnect()
            self._state = TransportState.DISCONNECTED
            logger.info(f"{self.__class__.__name__} disconnected")
        self._notify_status(False)

    def next_request_id(self) -> str:
        self._request_counter += 1
        return f"req_{self._request_counter}"

    async def request(self, command: Command) -> dict[str, Any]:
        """Send a command and wait for its Response frame."""
        if not self.is_connected:
            raise TransportClosedError("Transport not connected")

        request_id = command.id or self.next_request_id()
        if command.id != request_id:
            command = command.model_copy(update={"id": request_id})

        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._do_send(command.to_wire())
            return await asyncio.wait_for(future, timeout=self.config.timeout)
        except TimeoutError:
            raise RequestTimeoutError(command.type, self.config.timeout) from None
        finally:
            self._pending.pop(request_id, None)

    async def send(self, obj: dict[str, Any]) -> None:
        if not self.is_connected:
            raise TransportClosedError("Transport not connected")
        await self._do_send(obj)

    def add_listener(self, listener: FrameListener) -> Callable[[], None]:
        return _subscribe(self._listeners, listener)

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        return _subscribe(self._status_listeners, listener)

    def _dispatch_frame(self, frame: dict[str, Any]) -> None:
        if frame.get("type") == "response":
            response_id = frame.get("id")
            future = self._pending.get(response_id) if isinstance(response_id, str) else None
            if future is not None and not future.done():
                future.set_result(frame)
            elif response_id is not None:
                logger.debug(f"Response for unknown request {response_id}")

        for listener in list(self._listeners):
            try:
                listener(frame)
            except Exception as e:
                logger.exception(f"Frame listener failed: {e}")

    def _notify_status(self, connected: bool) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(connected)
            except Exception as e:
                logger.exception(f"Status listener failed: {e}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _read_loop(self) -> None:
        """Background task routing inbound frames."""
        try:
            async for frame in self._receive_frames():
                self._dispatch_frame(frame)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Read loop error: {e}")

        # The peer went away without disconnect() being called
        if self._state == TransportState.CONNECTED:
            self._state = TransportState.DISCONNECTED
            self._fail_pending(TransportClosedError("Connection closed"))
            logger.info(f"{self.__class__.__name__} connection lost")
            self._notify_status(False)

    # Abstract methods for subclasses
    @abstractmethod
    async def _do_connect(self) -> None:
        """Implementation-specific connection logic."""
        ...

    @abstractmethod
    async def _do_disconnect(self) -> None:
        """Implementation-specific disconnection logic."""
        ...

    @abstractmethod
    async def _do_send(self, obj: dict[str, Any]) -> None:
        """Implementation-specific send logic."""
        ...

    @abstractmethod
    def _receive_frames(self) -> AsyncIterator[dict[str, Any]]:
        """Implementation-specific receive logic. Must be an async generator."""
        ...

    async def __aenter__(self) -> BaseClientTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


class WebSocketClientTransport(BaseClientTransport):
    """Transport over a WebSocket to a runtime started with `serve`."""

    def __init__(self, config: ClientTransportConfig | None = None) -> None:
        super().__init__(config)
        self._ws: Any = None  # websockets ClientConnection

    def _connect_url(self) -> str:
        url = self.config.url.replace("http://", "ws://").replace("https://", "wss://")
        if not self.config.token:
            return url
        parts = urlsplit(url)
        query = "&".join(q for q in (parts.query, urlencode({"token": self.config.token})) if q)
        return urlunsplit(parts._replace(query=query))

    async def _do_connect(self) -> None:
        kwargs: dict[str, Any] = {"ping_interval": 30, "ping_timeout": 10}
        if self.config.origin:
            kwargs["origin"] = self.config.origin
        self._ws = await websockets.connect(self._connect_url(), **kwargs)

    async def _do_disconnect(self) -> None:
        if self._ws is not None:
            await self._ws.close()
            self._ws = None

    async def _do_send(self, obj: dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportClosedError("WebSocket not connected")
        await self._ws.send(encode_message(obj))

    async def _receive_frames(self) -> AsyncIterator[dict[str, Any]]:
        if self._ws is None:
            raise ConnectionError("WebSocket not connected")

        try:
            async for data in self._ws:
                try:
                    frame = json.loads(data)
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Invalid WebSocket frame: {e}")
                    continue
                if isinstance(frame, dict):
                    yield frame
        except websockets.ConnectionClosed as e:
            logger.info(f"WebSocket closed: {e}")


class _LoopbackConnection(ClientConnection):
    def __init__(self, deliver: Callable[[dict[str, Any]], None]) -> None:
        super().__init__()
        self._deliver = deliver

    async def _write(self, text: str) -> None:
        # Decode so in-process clients see exactly what a socket would carry
        self._deliver(json.loads(text))


class LoopbackClientTransport(BaseClientTransport):
    """In-process transport attached directly to a ProtocolServer's hub.

    Used for embedding and tests; it behaves like any other connection
    (broadcasts included) without a socket in between.
    """

    def __init__(self, server: ProtocolServer, config: ClientTransportConfig | None = None) -> None:
        super().__init__(config)
        self._server = server
        self._frames: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._connection: _LoopbackConnection | None = None

    async def _do_connect(self) -> None:
        self._frames = asyncio.Queue()
        self._connection = _LoopbackConnection(self._frames.put_nowait)
        self._server.hub.add(self._connection)

    async def _do_disconnect(self) -> None:
        if self._connection is not None:
            self._server.hub.remove(self._connection)
            self._connection = None
        self._frames.put_nowait(None)

    async def _do_send(self, obj: dict[str, Any]) -> None:
        if self._connection is None:
            raise TransportClosedError("Loopback not connected")
        self._server.handle_frame(self._connection, encode_message(obj))

    async def _receive_frames(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            frame = await self._frames.get()
            if frame is None:
                return
            yield frame
