"""Transport layer.

Every transport turns its medium into `ClientConnection`s registered with a
`ConnectionHub`:
- WebSocket - many browser or SDK clients, gated by an access policy
- stdio - a single parent process speaking JSON lines
- loopback - in-process clients (see `agent_session_runtime.sdk`)
"""

from .hub import ClientConnection, ConnectionHub, encode_message
from .stdio import StdioConnection, StdioServer
from .websocket import (
    CLOSE_FORBIDDEN_ORIGIN,
    CLOSE_UNAUTHORIZED,
    AccessPolicy,
    WebSocketConnection,
    serve_websocket,
)

__all__ = [
    "ClientConnection",
    "ConnectionHub",
    "encode_message",
    "StdioConnection",
    "StdioServer",
    "AccessPolicy",
    "WebSocketConnection",
    "serve_websocket",
    "CLOSE_FORBIDDEN_ORIGIN",
    "CLOSE_UNAUTHORIZED",
]
