"""WebSocket transport.

Full-duplex transport over Starlette WebSockets. Each accepted socket becomes
one hub connection; every text frame is handed to the protocol server.
Access control runs before the handshake is accepted, so rejected clients
never reach the dispatcher.
"""

from __future__ import annotations

import fnmatch
import hmac
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from .hub import ClientConnection

if TYPE_CHECKING:
    from ..server import ProtocolServer

logger = logging.getLogger(__name__)

CLOSE_FORBIDDEN_ORIGIN = 4403
CLOSE_UNAUTHORIZED = 4401


class WebSocketConnection(ClientConnection):
    """Server side of one WebSocket client."""

    def __init__(self, websocket: WebSocket) -> None:
        super().__init__()
        self._websocket = websocket

    @property
    def is_open(self) -> bool:
        return super().is_open and self._websocket.client_state == WebSocketState.CONNECTED

    async def _write(self, text: str) -> None:
        await self._websocket.send_text(text)


@dataclass
class AccessPolicy:
    """Connect-time checks for WebSocket clients.

    Origins are matched against shell-style patterns, so
    ``http://localhost:*`` admits any local port. With no patterns
    configured, any origin is accepted. With no token configured, no token
    is required.
    """

    allowed_origins: list[str] = field(default_factory=list)
    token: str | None = None

    def origin_allowed(self, origin: str | None) -> bool:
        if not self.allowed_origins:
            return True
        if not origin:
            return False
        return any(fnmatch.fnmatchcase(origin, pattern) for pattern in self.allowed_origins)

    def token_valid(self, presented: str | None) -> bool:
        if not self.token:
            return True
        if not presented:
            return False
        return hmac.compare_digest(presented.encode(), self.token.encode())

    def check(self, websocket: WebSocket) -> int | None:
        """Return a close code if the client must be rejected, else None."""
        origin = websocket.headers.get("origin")
        if not self.origin_allowed(origin):
            logger.warning(f"Rejected WebSocket from disallowed origin {origin!r}")
            return CLOSE_FORBIDDEN_ORIGIN

        if not self.token_valid(_presented_token(websocket)):
            logger.warning("Rejected WebSocket with missing or invalid token")
            return CLOSE_UNAUTHORIZED
        return None


def _presented_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    authorization = websocket.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value:
        return value.strip()
    return None


async def serve_websocket(
    websocket: WebSocket,
    server: ProtocolServer,
    policy: AccessPolicy | None = None,
) -> None:
    """Run one WebSocket client until it disconnects."""
    if policy is not None:
        code = policy.check(websocket)
        if code is not None:
            await websocket.close(code=code)
            return

    await websocket.accept()
    connection = WebSocketConnection(websocket)
    server.hub.add(connection)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            text = message.get("text")
            if text is None:
                logger.warning(f"Dropping binary frame from {connection.connection_id}")
                continue
            server.handle_frame(connection, text)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.exception(f"WebSocket error on {connection.connection_id}: {e}")
    finally:
        server.hub.remove(connection)
