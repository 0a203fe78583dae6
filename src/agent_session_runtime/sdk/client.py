"""Typed command helpers over a ClientTransport.

Each helper sends one command, waits for its Response and returns the
`data` payload. A failed Response raises RuntimeError with the server's
message; transport problems surface as TransportClosedError or
RequestTimeoutError from the transport.
"""

from __future__ import annotations

from typing import Any

from ..protocol.commands import Command, CommandType, ExtensionUIResponse
from .transport import ClientTransport


class ProtocolClient:
    """Client for one runtime connection."""

    def __init__(self, transport: ClientTransport) -> None:
        self._transport = transport

    @property
    def transport(self) -> ClientTransport:
        return self._transport

    async def request(
        self,
        command_type: str | CommandType,
        command_id: str | None = None,
        **params: Any,
    ) -> Any:
        """Send a command and return its `data`.

        Without `command_id` the transport assigns one.

        Raises:
            RuntimeError: If the server answered with a failure Response
        """
        response = await self._transport.request(Command.create(command_type, command_id, **params))
        if not response.get("success"):
            raise RuntimeError(response.get("error") or "Unknown error")
        return response.get("data")

    # Prompting

    async def prompt(
        self,
        message: str,
        images: list[dict[str, Any]] | None = None,
        streaming_behavior: str | None = None,
        command_id: str | None = None,
    ) -> None:
        """Start a turn; returns once the server has accepted it."""
        await self.request(
            CommandType.PROMPT,
            command_id,
            message=message,
            images=images or None,
            streamingBehavior=streaming_behavior,
        )

    async def abort(self) -> None:
        await self.request(CommandType.ABORT)

    async def clear_queue(self) -> dict[str, Any]:
        """Drop the server-side steering/follow-up queues.

        Returns:
            Whatever the session reports as removed
        """
        return await self.request(CommandType.CLEAR_QUEUE) or {}

    # Sessions

    async def list_sessions(self, scope: str = "cwd", session_dir: str | None = None) -> list[dict[str, Any]]:
        data = await self.request(CommandType.LIST_SESSIONS, scope=scope, sessionDir=session_dir)
        return list((data or {}).get("sessions", []))

    async def switch_session(self, session_path: str) -> bool:
        """Switch sessions.

        Returns:
            False if the session (or an extension) cancelled the switch
        """
        data = await self.request(CommandType.SWITCH_SESSION, sessionPath=session_path)
        return not (data or {}).get("cancelled", False)

    async def new_session(self, parent_session: str | None = None, cwd: str | None = None) -> bool:
        data = await self.request(CommandType.NEW_SESSION, parentSession=parent_session, cwd=cwd)
        return not (data or {}).get("cancelled", False)

    # State

    async def get_messages(self) -> list[dict[str, Any]]:
        data = await self.request(CommandType.GET_MESSAGES)
        return list((data or {}).get("messages", []))

    async def get_state(self) -> dict[str, Any]:
        return await self.request(CommandType.GET_STATE) or {}

    async def get_context_usage(self) -> dict[str, Any] | None:
        data = await self.request(CommandType.GET_CONTEXT_USAGE)
        return (data or {}).get("usage")

    async def set_thinking_level(self, level: str) -> None:
        await self.request(CommandType.SET_THINKING_LEVEL, level=level)

    # Models

    async def get_available_models(self) -> list[dict[str, Any]]:
        data = await self.request(CommandType.GET_AVAILABLE_MODELS)
        return list((data or {}).get("models", []))

    async def set_model(self, provider: str, model_id: str) -> dict[str, Any]:
        """Select a model.

        Raises:
            RuntimeError: If no available model matches
        """
        return await self.request(CommandType.SET_MODEL, provider=provider, modelId=model_id)

    async def cycle_model(self) -> dict[str, Any] | None:
        return await self.request(CommandType.CYCLE_MODEL)

    # Resources

    async def get_commands(self) -> list[dict[str, Any]]:
        data = await self.request(CommandType.GET_COMMANDS)
        return list((data or {}).get("commands", []))

    async def export_html(self, output_path: str | None = None) -> str:
        data = await self.request(CommandType.EXPORT_HTML, outputPath=output_path)
        return str((data or {}).get("path", ""))

    # Shell and filesystem

    async def bash(self, command: str) -> dict[str, Any]:
        return await self.request(CommandType.BASH, command=command) or {}

    async def list_directory(self, path: str | None = None) -> dict[str, Any]:
        """List a directory on the server host.

        Returns:
            {"absolutePath": ..., "entries": [{"name": ..., "isDirectory": ...}]}
        """
        return await self.request(CommandType.LIST_DIRECTORY, path=path) or {}

    # Extension dialogs

    async def send_extension_ui_response(
        self,
        request_id: str,
        *,
        value: Any = None,
        confirmed: bool | None = None,
        cancelled: bool = False,
    ) -> None:
        """Answer an `extension_ui_request` dialog. No Response is expected."""
        response = ExtensionUIResponse(id=request_id, value=value, confirmed=confirmed, cancelled=cancelled)
        await self._transport.send(response.to_wire())
