"""Client SDK for the agent session runtime.

Transports:
- websocket: connect to a runtime started with `serve`
- loopback: attach to an in-process ProtocolServer (embedding, tests)

On top of a transport:
- ProtocolClient: typed command helpers
- SessionTranscript: folds events and history into render-ready messages
- SessionView: keeps a transcript in sync with a live connection
"""

from .client import ProtocolClient
from .transcript import (
    BashResult,
    SessionTranscript,
    ToolStep,
    ToolStepPhase,
    Turn,
    TurnGroups,
    UiMessage,
    UiMessageKind,
    args_preview,
    extract_result_text,
    group_turns,
    last_user_message,
)
from .transport import (
    BaseClientTransport,
    ClientTransport,
    ClientTransportConfig,
    LoopbackClientTransport,
    TransportState,
    WebSocketClientTransport,
)
from .view import SessionView

__all__ = [
    # Transports
    "ClientTransport",
    "BaseClientTransport",
    "ClientTransportConfig",
    "TransportState",
    "WebSocketClientTransport",
    "LoopbackClientTransport",
    # Client
    "ProtocolClient",
    "SessionView",
    # Transcript
    "SessionTranscript",
    "UiMessage",
    "UiMessageKind",
    "ToolStep",
    "ToolStepPhase",
    "BashResult",
    "Turn",
    "TurnGroups",
    "args_preview",
    "extract_result_text",
    "group_turns",
    "last_user_message",
]
