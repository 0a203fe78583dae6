"""Protocol server: one agent session shared by every attached client.

Wires the session to the connection hub:
- session events are broadcast to all connections, in emission order
- extension dialogs go through the UI bridge as broadcasts
- each inbound command runs in its own task; its Response is unicast back
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from .errors import FrameError
from .protocol import (
    Command,
    CommandHandler,
    ExtensionError,
    ExtensionUIBridge,
    ExtensionUIResponse,
)
from .session import AgentSession
from .transport.hub import ClientConnection, ConnectionHub

logger = logging.getLogger(__name__)


class ProtocolServer:
    """Owns the hub, the extension UI bridge and the command handler for a session.

    Usage:
        server = ProtocolServer(session)
        await server.bind()
        hub_connection = ...  # any ClientConnection
        server.hub.add(hub_connection)
        server.handle_frame(hub_connection, '{"id": "1", "type": "get_state"}')
    """

    def __init__(
        self,
        session: AgentSession,
        *,
        hub: ConnectionHub | None = None,
        dialog_timeout: float | None = None,
    ) -> None:
        self.session = session
        self.hub = hub or ConnectionHub()
        self.bridge = ExtensionUIBridge(self.hub.broadcast, default_timeout=dialog_timeout)
        self.handler = CommandHandler(session, self.hub.broadcast)
        self._unsubscribe: Callable[[], None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def is_bound(self) -> bool:
        return self._unsubscribe is not None

    async def bind(self) -> None:
        """Subscribe to session events and attach the UI bridge to the session."""
        if self.is_bound:
            return
        self._unsubscribe = self.session.subscribe(self._on_session_event)
        await self.session.bind_extensions(self.bridge, self._on_extension_error)
        logger.info(f"Protocol server bound to session {self.session.session_id}")

    def _on_session_event(self, event: dict[str, Any]) -> None:
        self.hub.broadcast(event)

    def _on_extension_error(self, error: dict[str, Any]) -> None:
        event = ExtensionError(
            extensionPath=error.get("extensionPath"),
            event=error.get("event"),
            error=str(error.get("error", "unknown error")),
        )
        logger.warning(f"Extension error ({event.extensionPath}): {event.error}")
        self.hub.broadcast(event.to_wire())

    def handle_frame(self, connection: ClientConnection, text: str) -> asyncio.Task[None] | None:
        """Handle one inbound text frame from `connection`.

        Invalid frames are logged and dropped without a reply. Dialog answers
        are routed to the bridge synchronously. Commands are dispatched in a
        new task, which is returned.
        """
        try:
            frame = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping malformed frame from {connection.connection_id}: {e}")
            return None
        if not isinstance(frame, dict):
            logger.warning(f"Dropping non-object frame from {connection.connection_id}")
            return None

        if frame.get("type") == "extension_ui_response":
            try:
                response = ExtensionUIResponse.model_validate(frame)
            except ValidationError as e:
                logger.warning(f"Dropping invalid extension_ui_response: {e}")
                return None
            self.bridge.resolve_response(response)
            return None

        try:
            command = Command.from_frame(frame)
        except (FrameError, ValidationError) as e:
            logger.warning(f"Dropping frame from {connection.connection_id}: {e}")
            return None

        task = asyncio.create_task(self._dispatch(connection, command))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _dispatch(self, connection: ClientConnection, command: Command) -> None:
        response = await self.handler.handle(command)
        if not self.hub.send(connection, response.to_wire()):
            logger.debug(f"Response to {command.type} (id={command.id}) dropped, connection closed")

    async def shutdown(self) -> None:
        """Detach from the session and stop everything in flight."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

        dialogs = self.bridge.cancel_all()

        tasks = [t for t in self._tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        prompts = await self.handler.cancel_prompts()
        await self.hub.close_all()
        logger.info(
            f"Protocol server stopped ({len(tasks)} commands, {prompts} prompts, "
            f"{dialogs} dialogs cancelled)"
        )
