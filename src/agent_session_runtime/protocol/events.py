"""Event definitions for the protocol layer.

Events are broadcast to every attached connection and carry no correlation
id. Most of them are produced by the agent session itself and forwarded
untouched; the models below cover the ones the runtime originates.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class EventType(str, Enum):
    """All event types seen on the wire."""

    # Turn lifecycle
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"

    # Message streaming
    MESSAGE_START = "message_start"
    MESSAGE_UPDATE = "message_update"
    MESSAGE_END = "message_end"

    # Tool execution
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_END = "tool_execution_end"

    # Session lifecycle
    SESSION_CHANGED = "session_changed"

    # Out of band
    EXTENSION_UI_REQUEST = "extension_ui_request"
    EXTENSION_ERROR = "extension_error"

    # Command replies share the stream on the client side
    RESPONSE = "response"


class AssistantEventType(str, Enum):
    """Sub-events nested in `message_update.assistantMessageEvent`."""

    START = "start"
    TEXT_START = "text_start"
    TEXT_DELTA = "text_delta"
    TEXT_END = "text_end"
    THINKING_START = "thinking_start"
    THINKING_DELTA = "thinking_delta"
    THINKING_END = "thinking_end"
    TOOLCALL_START = "toolcall_start"
    TOOLCALL_DELTA = "toolcall_delta"
    TOOLCALL_END = "toolcall_end"
    DONE = "done"
    ERROR = "error"


class SessionChangeReason(str, Enum):
    """Why the active session changed."""

    NEW = "new"
    SWITCH = "switch"
    FORK = "fork"
    TREE = "tree"
    RELOAD = "reload"


class DialogMethod(str, Enum):
    """Extension UI request methods."""

    # Expect an extension_ui_response
    SELECT = "select"
    CONFIRM = "confirm"
    INPUT = "input"
    EDITOR = "editor"

    # Fire-and-forget
    NOTIFY = "notify"
    SET_STATUS = "setStatus"
    SET_WIDGET = "setWidget"
    SET_TITLE = "setTitle"
    SET_EDITOR_TEXT = "set_editor_text"

    @property
    def expects_response(self) -> bool:
        return self in _INTERACTIVE_METHODS


_INTERACTIVE_METHODS = frozenset(
    {DialogMethod.SELECT, DialogMethod.CONFIRM, DialogMethod.INPUT, DialogMethod.EDITOR}
)


class SessionChanged(BaseModel):
    """Broadcast whenever the active session is replaced or reloaded.

    Clients treat this as the only authority on which session a transcript
    belongs to.
    """

    type: Literal["session_changed"] = "session_changed"
    reason: SessionChangeReason
    sessionId: str
    sessionFile: str | None = None
    sessionName: str | None = None
    messageCount: int = 0
    leafId: str | None = None

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_none=True)
        # A session without entries has no leaf; clients still expect the key
        data.setdefault("leafId", None)
        return data


class ExtensionUIRequest(BaseModel):
    """A UI request pushed to clients on behalf of a session extension.

    Method-specific fields (title, options, message, statusKey, ...) are
    carried as extra fields.
    """

    model_config = ConfigDict(extra="allow")

    type: Literal["extension_ui_request"] = "extension_ui_request"
    id: str
    method: DialogMethod

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ExtensionError(BaseModel):
    """An error raised inside a session extension."""

    type: Literal["extension_error"] = "extension_error"
    extensionPath: str | None = None
    event: str | None = None
    error: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


def event_type(event: Any) -> str | None:
    """Return the `type` discriminator of a decoded event, if any."""
    if isinstance(event, dict):
        value = event.get("type")
        return value if isinstance(value, str) else None
    return None
