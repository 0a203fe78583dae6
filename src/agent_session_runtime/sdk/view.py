"""Client-side view of the served session.

SessionView keeps a SessionTranscript in sync with one runtime connection:
it loads state and history on attach, feeds every inbound frame to the
transcript, and refetches history when the server announces a session
change.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from typing import Any

from ..errors import RequestTimeoutError, TransportClosedError
from .client import ProtocolClient
from .transcript import SessionTranscript, TurnGroups, group_turns

logger = logging.getLogger(__name__)


class SessionView:
    """Transcript plus the commands that keep it current."""

    def __init__(
        self,
        client: ProtocolClient,
        transcript: SessionTranscript | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.client = client
        self.transcript = transcript or SessionTranscript()
        self.state: dict[str, Any] = {}
        self._on_change = on_change
        self._unsubscribe: Callable[[], None] | None = None
        self._generation = 0
        self._refresh_tasks: set[asyncio.Task[None]] = set()

    @property
    def turns(self) -> TurnGroups:
        return group_turns(self.transcript.messages)

    @property
    def streaming(self) -> bool:
        return self.transcript.streaming

    async def attach(self) -> dict[str, Any]:
        """Subscribe to the connection and load the current session.

        Returns:
            The `get_state` payload
        """
        if self._unsubscribe is None:
            self._unsubscribe = self.client.transport.add_listener(self.on_event)

        self._generation += 1
        generation = self._generation
        state = await self.client.get_state()
        history = await self.client.get_messages()
        if generation != self._generation:
            return state

        self.state = state
        self.transcript.reset(state.get("sessionId"))
        self.transcript.streaming = bool(state.get("isStreaming"))
        self.transcript.load_history(history)
        self._changed()
        return state

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._refresh_tasks):
            task.cancel()
        if self._refresh_tasks:
            await asyncio.gather(*self._refresh_tasks, return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait for outstanding history refreshes."""
        while self._refresh_tasks:
            await asyncio.gather(*list(self._refresh_tasks), return_exceptions=True)

    # -------------------------------------------------------------------------
    # User actions
    # -------------------------------------------------------------------------

    async def send_prompt(self, text: str, images: list[dict[str, Any]] | None = None) -> None:
        """Send a prompt, or a steering message while a turn is running.

        Steering messages stay in `transcript.scheduled` until the server
        echoes them in a `message_start`, or are withdrawn when the prompt
        fails.
        """
        request_id = f"prompt_{uuid.uuid4().hex[:12]}"
        scheduled = None
        if self.transcript.streaming:
            scheduled = self.transcript.schedule_message(text, images, request_id=request_id)
            behavior: str | None = "steer"
        else:
            self.transcript.add_user_message(text or "(image attachment)", images)
            behavior = None
        self._changed()

        try:
            await self.client.prompt(text, images, streaming_behavior=behavior, command_id=request_id)
        except RuntimeError as e:
            # The failed Response frame has already been rendered
            logger.debug(f"Prompt rejected: {e}")
            if scheduled is not None and self.transcript.discard_scheduled(scheduled):
                self._changed()
        except (TransportClosedError, RequestTimeoutError, ConnectionError) as e:
            if scheduled is not None:
                self.transcript.discard_scheduled(scheduled)
            self.transcript.add_error_message(f"Failed to send prompt: {e}")
            self._changed()

    async def restore_scheduled(self) -> list[str]:
        """Withdraw queued steering messages.

        Clears the local queue and the server's, returning the texts so
        they can go back into the editor.
        """
        cleared = self.transcript.clear_scheduled()
        self._changed()
        await self.client.clear_queue()
        return [message.text for message in cleared]

    async def run_bash(self, command: str) -> dict[str, Any]:
        result = await self.client.bash(command)
        self.transcript.add_bash_result(command, str(result.get("output", "")), result.get("exitCode"))
        self._changed()
        return result

    # -------------------------------------------------------------------------
    # Inbound frames
    # -------------------------------------------------------------------------

    def on_event(self, event: dict[str, Any]) -> None:
        changed = self.transcript.handle_event(event)
        if event.get("type") == "session_changed":
            self.state.update(
                {
                    "sessionId": event.get("sessionId"),
                    "sessionFile": event.get("sessionFile"),
                    "sessionName": event.get("sessionName"),
                }
            )
            self._schedule_refresh()
        if changed:
            self._changed()

    def _schedule_refresh(self) -> None:
        self._generation += 1
        task = asyncio.create_task(self._refresh_history(self._generation))
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_history(self, generation: int) -> None:
        try:
            history = await self.client.get_messages()
        except (RuntimeError, TransportClosedError, RequestTimeoutError, ConnectionError) as e:
            logger.warning(f"Failed to refresh history: {e}")
            return
        if generation != self._generation:
            logger.debug(f"Discarding stale history fetch {generation}")
            return
        self.transcript.load_history(history)
        self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change()
