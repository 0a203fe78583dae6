"""Exception types shared across the runtime."""

from __future__ import annotations


class RuntimeProtocolError(Exception):
    """Base class for protocol-level failures."""


class FrameError(RuntimeProtocolError, ValueError):
    """Raised when an inbound frame is not a usable JSON object."""


class SessionFactoryError(RuntimeProtocolError):
    """Raised when the configured session factory cannot be resolved or called."""


class TransportClosedError(RuntimeProtocolError, ConnectionError):
    """Raised on the client side when the connection goes away mid-request."""


class RequestTimeoutError(RuntimeProtocolError, TimeoutError):
    """Raised on the client side when no Response arrives in time."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Request timed out: {command}")
        self.command = command
        self.timeout = timeout
