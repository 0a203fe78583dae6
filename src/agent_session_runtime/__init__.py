"""Agent Session Runtime.

Serves one agent session to any number of clients over WebSocket or stdio,
using a shared command/response/event protocol.
"""

from .config import RuntimeConfig
from .errors import (
    FrameError,
    RequestTimeoutError,
    RuntimeProtocolError,
    SessionFactoryError,
    TransportClosedError,
)
from .server import ProtocolServer
from .session import AgentSession, create_session, load_session_factory

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "AgentSession",
    "ProtocolServer",
    "RuntimeConfig",
    "create_session",
    "load_session_factory",
    "RuntimeProtocolError",
    "FrameError",
    "SessionFactoryError",
    "RequestTimeoutError",
    "TransportClosedError",
]
