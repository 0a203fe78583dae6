"""Transport-agnostic protocol layer.

Defines the command/response/event vocabulary spoken identically over every
transport (WebSocket, stdio, in-process loopback).

Key concepts:
- Commands: Client → Server requests with an optional client-chosen `id`
- Responses: exactly one per Command, sent only to the originating client
- Events: Server → all clients broadcasts, never correlated

The extension UI bridge rides the same channel: dialog requests are
broadcast events and the answers come back as `extension_ui_response`.
"""

from .commands import Command, CommandType, ExtensionUIResponse, Response
from .events import (
    AssistantEventType,
    DialogMethod,
    EventType,
    ExtensionError,
    ExtensionUIRequest,
    SessionChanged,
    SessionChangeReason,
)
from .extension_ui import ExtensionUIBridge, PendingDialogRequest
from .handler import CommandHandler
from .tree import extract_preview_text, map_tree_node

__all__ = [
    "Command",
    "CommandType",
    "Response",
    "ExtensionUIResponse",
    "EventType",
    "AssistantEventType",
    "DialogMethod",
    "SessionChanged",
    "SessionChangeReason",
    "ExtensionUIRequest",
    "ExtensionError",
    "ExtensionUIBridge",
    "PendingDialogRequest",
    "CommandHandler",
    "extract_preview_text",
    "map_tree_node",
]
