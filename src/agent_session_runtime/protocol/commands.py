"""Command definitions for the protocol layer.

Commands are requests from clients. Each command may carry a client-chosen
`id`; the server echoes it back on the single Response it produces and never
inspects it otherwise.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..errors import FrameError


class CommandType(str, Enum):
    """All supported command types."""

    # Prompting
    PROMPT = "prompt"
    STEER = "steer"
    FOLLOW_UP = "follow_up"
    ABORT = "abort"
    CLEAR_QUEUE = "clear_queue"

    # Session lifecycle
    NEW_SESSION = "new_session"
    SWITCH_SESSION = "switch_session"
    FORK = "fork"
    GET_FORK_MESSAGES = "get_fork_messages"
    LIST_SESSIONS = "list_sessions"
    SET_SESSION_NAME = "set_session_name"

    # State
    GET_STATE = "get_state"
    GET_MESSAGES = "get_messages"
    GET_LAST_ASSISTANT_TEXT = "get_last_assistant_text"
    GET_CONTEXT_USAGE = "get_context_usage"
    GET_SESSION_STATS = "get_session_stats"

    # Model
    SET_MODEL = "set_model"
    CYCLE_MODEL = "cycle_model"
    GET_AVAILABLE_MODELS = "get_available_models"

    # Thinking and queue modes
    SET_THINKING_LEVEL = "set_thinking_level"
    CYCLE_THINKING_LEVEL = "cycle_thinking_level"
    SET_STEERING_MODE = "set_steering_mode"
    SET_FOLLOW_UP_MODE = "set_follow_up_mode"

    # Compaction and retry
    COMPACT = "compact"
    SET_AUTO_COMPACTION = "set_auto_compaction"
    SET_AUTO_RETRY = "set_auto_retry"
    ABORT_RETRY = "abort_retry"

    # Shell and filesystem
    BASH = "bash"
    ABORT_BASH = "abort_bash"
    LIST_DIRECTORY = "list_directory"

    # Tools
    GET_TOOLS = "get_tools"
    SET_ACTIVE_TOOLS = "set_active_tools"

    # Session tree
    GET_SESSION_TREE = "get_session_tree"
    NAVIGATE_TREE = "navigate_tree"
    SET_ENTRY_LABEL = "set_entry_label"

    # Resources
    RELOAD_RESOURCES = "reload_resources"
    GET_COMMANDS = "get_commands"
    EXPORT_HTML = "export_html"


class Command(BaseModel):
    """A command from client to server.

    Typed parameters travel as top-level fields next to `type`, exactly as
    they appear on the wire.

    Example:
        {
            "id": "req_1",
            "type": "switch_session",
            "sessionPath": "/home/me/.sessions/abc.jsonl"
        }
    """

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str

    @property
    def params(self) -> dict[str, Any]:
        """All parameters other than `id` and `type`."""
        return dict(self.model_extra or {})

    def get_param(self, key: str, default: Any = None) -> Any:
        """Get a parameter with optional default."""
        value = self.params.get(key, default)
        return default if value is None else value

    def require_param(self, key: str) -> Any:
        """Get a required parameter, raise if missing."""
        params = self.params
        if key not in params or params[key] is None:
            raise ValueError(f"Missing required parameter: {key}")
        return params[key]

    @classmethod
    def create(
        cls,
        command_type: str | CommandType,
        command_id: str | None = None,
        **params: Any,
    ) -> Command:
        """Factory method for creating commands."""
        value = command_type.value if isinstance(command_type, CommandType) else command_type
        return cls(id=command_id, type=value, **params)

    @classmethod
    def from_frame(cls, frame: dict[str, Any]) -> Command:
        """Build a command from a decoded frame.

        Raises:
            FrameError: If the frame has no string `type`, or an `id` that
                is not a string.
        """
        command_type = frame.get("type")
        if not isinstance(command_type, str) or not command_type:
            raise FrameError(f"Frame has no command type: {frame!r}")
        command_id = frame.get("id")
        if command_id is not None and not isinstance(command_id, str):
            raise FrameError(f"Command id must be a string: {command_id!r}")
        return cls.model_validate(frame)

    def to_wire(self) -> dict[str, Any]:
        """Serialize for sending over a transport."""
        data: dict[str, Any] = {"type": self.type}
        if self.id is not None:
            data["id"] = self.id
        data.update({k: v for k, v in self.params.items() if v is not None})
        return data


_UNSET: Any = object()


class Response(BaseModel):
    """The single reply to a Command, sent only to the originating connection.

    Example (success with data):
        {"id": "1", "type": "response", "command": "get_state",
         "success": true, "data": {"sessionId": "abc"}}

    Example (failure):
        {"id": "x", "type": "response", "command": "bogus",
         "success": false, "error": "Unknown command: bogus"}
    """

    id: str | None = None
    type: Literal["response"] = "response"
    command: str
    success: bool
    data: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, command_id: str | None, command: str, data: Any = _UNSET) -> Response:
        """Create a success response; `data` is omitted from the wire when not given."""
        if data is _UNSET:
            return cls(id=command_id, command=command, success=True)
        return cls(id=command_id, command=command, success=True, data=data)

    @classmethod
    def fail(cls, command_id: str | None, command: str, message: str) -> Response:
        """Create a failure response."""
        return cls(id=command_id, command=command, success=False, error=message)

    @property
    def has_data(self) -> bool:
        return "data" in self.model_fields_set

    def to_wire(self) -> dict[str, Any]:
        """Serialize, keeping an explicit `data: null` but dropping unset fields."""
        wire: dict[str, Any] = {
            "type": self.type,
            "command": self.command,
            "success": self.success,
        }
        if self.id is not None:
            wire["id"] = self.id
        if self.success:
            if self.has_data:
                wire["data"] = self.data
        else:
            wire["error"] = self.error or "unknown error"
        return wire


class ExtensionUIResponse(BaseModel):
    """A client's answer to an `extension_ui_request` dialog."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["extension_ui_response"] = "extension_ui_response"
    id: str
    value: Any = None
    confirmed: bool | None = None
    cancelled: bool = Field(default=False)

    @classmethod
    def cancel(cls, request_id: str) -> ExtensionUIResponse:
        return cls(id=request_id, cancelled=True)

    def to_wire(self) -> dict[str, Any]:
        wire: dict[str, Any] = {"type": self.type, "id": self.id}
        if self.cancelled:
            wire["cancelled"] = True
        elif self.confirmed is not None:
            wire["confirmed"] = self.confirmed
        else:
            wire["value"] = self.value
        return wire
