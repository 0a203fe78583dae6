"""Interface to the agent session SDK.

The runtime never runs the agent loop itself. It drives an external session
object through the protocol below and forwards whatever events the session
emits. Sessions are produced by a factory configured as
``"package.module:attribute"``.
"""

from __future__ import annotations

import importlib
import inspect
import logging
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from .errors import SessionFactoryError

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]
ExtensionErrorHandler = Callable[[dict[str, Any]], None]


@runtime_checkable
class AgentSession(Protocol):
    """Interface the command dispatcher needs from an agent session.

    Property values are read at dispatch time; the session owns all of its
    mutable state.
    """

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def session_id(self) -> str: ...

    @property
    def session_file(self) -> str | None: ...

    @property
    def session_name(self) -> str | None: ...

    @property
    def cwd(self) -> str: ...

    @property
    def model(self) -> Any: ...

    @property
    def thinking_level(self) -> str: ...

    @property
    def is_streaming(self) -> bool: ...

    @property
    def is_compacting(self) -> bool: ...

    @property
    def auto_compaction_enabled(self) -> bool: ...

    @property
    def steering_mode(self) -> str: ...

    @property
    def follow_up_mode(self) -> str: ...

    @property
    def pending_message_count(self) -> int: ...

    @property
    def messages(self) -> list[dict[str, Any]]: ...

    @property
    def leaf_id(self) -> str | None: ...

    # -------------------------------------------------------------------------
    # Prompting
    # -------------------------------------------------------------------------

    async def prompt(
        self,
        message: str,
        images: list[dict[str, Any]] | None = None,
        streaming_behavior: str | None = None,
    ) -> None:
        """Run a prompt to completion, emitting events as it goes."""
        ...

    async def steer(self, message: str, images: list[dict[str, Any]] | None = None) -> None: ...

    async def follow_up(self, message: str, images: list[dict[str, Any]] | None = None) -> None: ...

    async def abort(self) -> None: ...

    def clear_queue(self) -> dict[str, Any]:
        """Drop queued steering and follow-up messages, returning what was removed."""
        ...

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    async def new_session(self, parent_session: str | None = None, cwd: str | None = None) -> bool:
        """Start a new session. Returns False if an extension cancelled it."""
        ...

    async def switch_session(self, path: str) -> bool:
        """Load another session file. Returns False if cancelled."""
        ...

    async def fork(self, entry_id: str) -> dict[str, Any]:
        """Fork at an entry. Returns ``{"selectedText", "cancelled"}``."""
        ...

    def get_fork_messages(self) -> list[dict[str, Any]]: ...

    async def list_sessions(self, scope: str, session_dir: str | None = None) -> list[dict[str, Any]]: ...

    def set_session_name(self, name: str) -> None: ...

    async def reload(self) -> None: ...

    # -------------------------------------------------------------------------
    # Settings and stats
    # -------------------------------------------------------------------------

    async def get_available_models(self) -> list[dict[str, Any]]:
        """Models with configured credentials, each carrying `provider` and `id`."""
        ...

    async def set_model(self, model: dict[str, Any]) -> None: ...

    async def cycle_model(self) -> Any:
        """Switch to the next scoped model. Returns None when there is only one."""
        ...

    def set_thinking_level(self, level: str) -> None: ...

    def cycle_thinking_level(self) -> str | None: ...

    def set_steering_mode(self, mode: str) -> None: ...

    def set_follow_up_mode(self, mode: str) -> None: ...

    async def compact(self, custom_instructions: str | None = None) -> Any: ...

    def set_auto_compaction(self, enabled: bool) -> None: ...

    def set_auto_retry(self, enabled: bool) -> None: ...

    def abort_retry(self) -> None: ...

    def get_context_usage(self) -> Any: ...

    def get_session_stats(self) -> Any: ...

    def get_last_assistant_text(self) -> str | None: ...

    # -------------------------------------------------------------------------
    # Shell and tools
    # -------------------------------------------------------------------------

    async def execute_bash(self, command: str) -> dict[str, Any]: ...

    def abort_bash(self) -> None: ...

    def get_active_tool_names(self) -> list[str]: ...

    def get_all_tools(self) -> list[dict[str, Any]]: ...

    def set_active_tools_by_name(self, names: list[str]) -> None: ...

    # -------------------------------------------------------------------------
    # Session tree
    # -------------------------------------------------------------------------

    def get_tree(self) -> list[dict[str, Any]]: ...

    async def navigate_tree(self, target_id: str, **options: Any) -> dict[str, Any]:
        """Move the leaf to `target_id`. Returns ``{"cancelled", "editorText"?}``."""
        ...

    def append_label_change(self, target_id: str, label: str | None) -> None: ...

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def get_commands(self) -> list[dict[str, Any]]:
        """Slash commands from extensions, prompt templates and skills."""
        ...

    async def export_html(self, output_path: str | None = None) -> str:
        """Write the session as HTML. Returns the path written."""
        ...

    # -------------------------------------------------------------------------
    # Wiring
    # -------------------------------------------------------------------------

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an event listener. Returns an unsubscribe function."""
        ...

    async def bind_extensions(self, ui_context: Any, on_error: ExtensionErrorHandler) -> None: ...


def load_session_factory(reference: str) -> Callable[..., Any]:
    """Resolve a ``"module.path:attribute"`` factory reference.

    Raises:
        SessionFactoryError: If the module or attribute cannot be found
    """
    module_path, sep, attr_path = reference.partition(":")
    if not sep or not module_path or not attr_path:
        raise SessionFactoryError(f"Invalid session factory '{reference}', expected 'module:attribute'")

    try:
        target: Any = importlib.import_module(module_path)
    except ImportError as e:
        raise SessionFactoryError(f"Cannot import session factory module '{module_path}': {e}") from e

    for name in attr_path.split("."):
        try:
            target = getattr(target, name)
        except AttributeError as e:
            raise SessionFactoryError(f"Session factory '{reference}' not found") from e

    if not callable(target):
        raise SessionFactoryError(f"Session factory '{reference}' is not callable")
    return target


async def create_session(reference: str, **kwargs: Any) -> AgentSession:
    """Build a session from the configured factory.

    The factory may be a plain function or a coroutine function.
    """
    factory = load_session_factory(reference)
    try:
        session = factory(**kwargs)
        if inspect.isawaitable(session):
            session = await session
    except SessionFactoryError:
        raise
    except Exception as e:
        raise SessionFactoryError(f"Session factory '{reference}' failed: {e}") from e

    logger.info(f"Created session {getattr(session, 'session_id', '?')} from {reference}")
    return session
