"""Command Handler - Transport-agnostic dispatch.

Turns each Command into one session operation and exactly one Response.
All transports (WebSocket, stdio, in-process loopback) share this handler.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .commands import Command, CommandType, Response
from .events import SessionChanged, SessionChangeReason
from .tree import map_tree_node

if TYPE_CHECKING:
    from ..session import AgentSession

logger = logging.getLogger(__name__)

OutputFn = Callable[[dict[str, Any]], None]
HandlerFn = Callable[[Command], Awaitable[Response]]


class CommandHandler:
    """Dispatches protocol commands against a single agent session.

    Usage:
        handler = CommandHandler(session, hub.broadcast)
        response = await handler.handle(command)
        hub.send(connection, response.to_wire())

    Correlation:
        The Response echoes the command's `id` unchanged. The handler never
        generates or inspects ids.

    Execution shapes:
        Most commands are awaited and answered when the session call returns.
        `prompt` is answered immediately; if the prompt later fails, a failed
        Response is broadcast through `output` instead.

    Session changes:
        Commands that replace the active session broadcast `session_changed`
        through `output` before their Response is returned.
    """

    def __init__(
        self,
        session: AgentSession,
        output: OutputFn,
    ) -> None:
        """Initialize handler.

        Args:
            session: The agent session to drive
            output: Function broadcasting one message to all clients

        Raises:
            TypeError: If a CommandType member has no handler
        """
        self._session = session
        self._output = output
        self._prompt_tasks: set[asyncio.Task[None]] = set()

        self._handlers: dict[CommandType, HandlerFn] = {
            # Prompting
            CommandType.PROMPT: self._prompt,
            CommandType.STEER: self._steer,
            CommandType.FOLLOW_UP: self._follow_up,
            CommandType.ABORT: self._abort,
            CommandType.CLEAR_QUEUE: self._clear_queue,
            # Session lifecycle
            CommandType.NEW_SESSION: self._new_session,
            CommandType.SWITCH_SESSION: self._switch_session,
            CommandType.FORK: self._fork,
            CommandType.GET_FORK_MESSAGES: self._get_fork_messages,
            CommandType.LIST_SESSIONS: self._list_sessions,
            CommandType.SET_SESSION_NAME: self._set_session_name,
            # State
            CommandType.GET_STATE: self._get_state,
            CommandType.GET_MESSAGES: self._get_messages,
            CommandType.GET_LAST_ASSISTANT_TEXT: self._get_last_assistant_text,
            CommandType.GET_CONTEXT_USAGE: self._get_context_usage,
            CommandType.GET_SESSION_STATS: self._get_session_stats,
            # Model
            CommandType.SET_MODEL: self._set_model,
            CommandType.CYCLE_MODEL: self._cycle_model,
            CommandType.GET_AVAILABLE_MODELS: self._get_available_models,
            # Thinking and queue modes
            CommandType.SET_THINKING_LEVEL: self._set_thinking_level,
            CommandType.CYCLE_THINKING_LEVEL: self._cycle_thinking_level,
            CommandType.SET_STEERING_MODE: self._set_steering_mode,
            CommandType.SET_FOLLOW_UP_MODE: self._set_follow_up_mode,
            # Compaction and retry
            CommandType.COMPACT: self._compact,
            CommandType.SET_AUTO_COMPACTION: self._set_auto_compaction,
            CommandType.SET_AUTO_RETRY: self._set_auto_retry,
            CommandType.ABORT_RETRY: self._abort_retry,
            # Shell and filesystem
            CommandType.BASH: self._bash,
            CommandType.ABORT_BASH: self._abort_bash,
            CommandType.LIST_DIRECTORY: self._list_directory,
            # Tools
            CommandType.GET_TOOLS: self._get_tools,
            CommandType.SET_ACTIVE_TOOLS: self._set_active_tools,
            # Session tree
            CommandType.GET_SESSION_TREE: self._get_session_tree,
            CommandType.NAVIGATE_TREE: self._navigate_tree,
            CommandType.SET_ENTRY_LABEL: self._set_entry_label,
            # Resources
            CommandType.RELOAD_RESOURCES: self._reload_resources,
            CommandType.GET_COMMANDS: self._get_commands,
            CommandType.EXPORT_HTML: self._export_html,
        }

        missing = [t.value for t in CommandType if t not in self._handlers]
        if missing:
            raise TypeError(f"No handler for command types: {', '.join(missing)}")

    async def handle(self, command: Command) -> Response:
        """Process a command and produce its Response.

        Never raises for handler failures; they become failed Responses
        carrying the command's own id and type.
        """
        logger.debug(f"Handling command: {command.type} (id={command.id})")

        try:
            command_type = CommandType(command.type)
        except ValueError:
            logger.warning(f"Unknown command: {command.type}")
            return Response.fail(command.id, command.type, f"Unknown command: {command.type}")

        try:
            return await self._handlers[command_type](command)
        except Exception as e:
            logger.exception(f"Error handling command {command.type} (id={command.id}): {e}")
            return Response.fail(command.id, command.type, str(e) or type(e).__name__)

    async def cancel_prompts(self) -> int:
        """Cancel in-flight fire-and-forget prompts.

        Returns:
            Number of prompt tasks cancelled
        """
        tasks = [t for t in self._prompt_tasks if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    def _emit_session_changed(self, reason: SessionChangeReason) -> None:
        session = self._session
        event = SessionChanged(
            reason=reason,
            sessionId=session.session_id,
            sessionFile=session.session_file,
            sessionName=session.session_name,
            messageCount=len(session.messages),
            leafId=session.leaf_id,
        )
        self._output(event.to_wire())

    # =========================================================================
    # Prompting
    # =========================================================================

    async def _prompt(self, command: Command) -> Response:
        """Handle prompt: answered at once, the turn runs in the background."""
        message = command.require_param("message")
        task = asyncio.create_task(
            self._run_prompt(
                command.id,
                message,
                command.get_param("images"),
                command.get_param("streamingBehavior"),
            )
        )
        self._prompt_tasks.add(task)
        task.add_done_callback(self._prompt_tasks.discard)
        return Response.ok(command.id, "prompt")

    async def _run_prompt(
        self,
        command_id: str | None,
        message: str,
        images: list[dict[str, Any]] | None,
        streaming_behavior: str | None,
    ) -> None:
        try:
            await self._session.prompt(message, images=images, streaming_behavior=streaming_behavior)
        except Exception as e:
            logger.warning(f"Prompt {command_id} failed: {e}")
            self._output(Response.fail(command_id, "prompt", str(e) or type(e).__name__).to_wire())

    async def _steer(self, command: Command) -> Response:
        await self._session.steer(command.require_param("message"), command.get_param("images"))
        return Response.ok(command.id, "steer")

    async def _follow_up(self, command: Command) -> Response:
        await self._session.follow_up(command.require_param("message"), command.get_param("images"))
        return Response.ok(command.id, "follow_up")

    async def _abort(self, command: Command) -> Response:
        await self._session.abort()
        return Response.ok(command.id, "abort")

    async def _clear_queue(self, command: Command) -> Response:
        cleared = self._session.clear_queue()
        return Response.ok(command.id, "clear_queue", cleared)

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    async def _new_session(self, command: Command) -> Response:
        ok = await self._session.new_session(
            parent_session=command.get_param("parentSession"),
            cwd=command.get_param("cwd"),
        )
        cancelled = not ok
        if not cancelled:
            self._emit_session_changed(SessionChangeReason.NEW)
        return Response.ok(command.id, "new_session", {"cancelled": cancelled})

    async def _switch_session(self, command: Command) -> Response:
        session_path = command.require_param("sessionPath")
        cancelled = not await self._session.switch_session(session_path)
        if not cancelled:
            self._emit_session_changed(SessionChangeReason.SWITCH)
        return Response.ok(command.id, "switch_session", {"cancelled": cancelled})

    async def _fork(self, command: Command) -> Response:
        result = await self._session.fork(command.require_param("entryId"))
        cancelled = bool(result.get("cancelled"))
        if not cancelled:
            self._emit_session_changed(SessionChangeReason.FORK)
        return Response.ok(
            command.id,
            "fork",
            {"text": result.get("selectedText"), "cancelled": cancelled},
        )

    async def _get_fork_messages(self, command: Command) -> Response:
        messages = self._session.get_fork_messages()
        return Response.ok(command.id, "get_fork_messages", {"messages": messages})

    async def _list_sessions(self, command: Command) -> Response:
        scope = command.get_param("scope", "cwd")
        sessions = await self._session.list_sessions(scope, session_dir=command.get_param("sessionDir"))
        return Response.ok(command.id, "list_sessions", {"sessions": sessions})

    async def _set_session_name(self, command: Command) -> Response:
        name = str(command.get_param("name", "")).strip()
        if not name:
            return Response.fail(command.id, "set_session_name", "Session name cannot be empty")
        self._session.set_session_name(name)
        return Response.ok(command.id, "set_session_name")

    # =========================================================================
    # State
    # =========================================================================

    async def _get_state(self, command: Command) -> Response:
        session = self._session
        state = {
            "model": session.model,
            "thinkingLevel": session.thinking_level,
            "isStreaming": session.is_streaming,
            "isCompacting": session.is_compacting,
            "autoCompactionEnabled": session.auto_compaction_enabled,
            "steeringMode": session.steering_mode,
            "followUpMode": session.follow_up_mode,
            "sessionFile": session.session_file,
            "sessionId": session.session_id,
            "sessionName": session.session_name,
            "cwd": session.cwd,
            "messageCount": len(session.messages),
            "pendingMessageCount": session.pending_message_count,
        }
        return Response.ok(command.id, "get_state", state)

    async def _get_messages(self, command: Command) -> Response:
        return Response.ok(command.id, "get_messages", {"messages": self._session.messages})

    async def _get_last_assistant_text(self, command: Command) -> Response:
        text = self._session.get_last_assistant_text()
        return Response.ok(command.id, "get_last_assistant_text", {"text": text})

    async def _get_context_usage(self, command: Command) -> Response:
        usage = self._session.get_context_usage()
        return Response.ok(command.id, "get_context_usage", {"usage": usage})

    async def _get_session_stats(self, command: Command) -> Response:
        return Response.ok(command.id, "get_session_stats", self._session.get_session_stats())

    # =========================================================================
    # Model
    # =========================================================================

    async def _set_model(self, command: Command) -> Response:
        provider = command.require_param("provider")
        model_id = command.require_param("modelId")
        models = await self._session.get_available_models()
        model = next((m for m in models if m.get("provider") == provider and m.get("id") == model_id), None)
        if model is None:
            return Response.fail(command.id, "set_model", f"Model not found: {provider}/{model_id}")
        await self._session.set_model(model)
        return Response.ok(command.id, "set_model", model)

    async def _cycle_model(self, command: Command) -> Response:
        result = await self._session.cycle_model()
        return Response.ok(command.id, "cycle_model", result or None)

    async def _get_available_models(self, command: Command) -> Response:
        models = await self._session.get_available_models()
        return Response.ok(command.id, "get_available_models", {"models": models})

    # =========================================================================
    # Thinking and queue modes
    # =========================================================================

    async def _set_thinking_level(self, command: Command) -> Response:
        self._session.set_thinking_level(command.require_param("level"))
        return Response.ok(command.id, "set_thinking_level")

    async def _cycle_thinking_level(self, command: Command) -> Response:
        level = self._session.cycle_thinking_level()
        if not level:
            return Response.ok(command.id, "cycle_thinking_level", None)
        return Response.ok(command.id, "cycle_thinking_level", {"level": level})

    async def _set_steering_mode(self, command: Command) -> Response:
        self._session.set_steering_mode(command.require_param("mode"))
        return Response.ok(command.id, "set_steering_mode")

    async def _set_follow_up_mode(self, command: Command) -> Response:
        self._session.set_follow_up_mode(command.require_param("mode"))
        return Response.ok(command.id, "set_follow_up_mode")

    async def _compact(self, command: Command) -> Response:
        result = await self._session.compact(command.get_param("customInstructions"))
        return Response.ok(command.id, "compact", result)

    async def _set_auto_compaction(self, command: Command) -> Response:
        self._session.set_auto_compaction(bool(command.require_param("enabled")))
        return Response.ok(command.id, "set_auto_compaction")

    async def _set_auto_retry(self, command: Command) -> Response:
        self._session.set_auto_retry(bool(command.require_param("enabled")))
        return Response.ok(command.id, "set_auto_retry")

    async def _abort_retry(self, command: Command) -> Response:
        self._session.abort_retry()
        return Response.ok(command.id, "abort_retry")

    # =========================================================================
    # Shell and filesystem
    # =========================================================================

    async def _bash(self, command: Command) -> Response:
        result = await self._session.execute_bash(command.require_param("command"))
        return Response.ok(command.id, "bash", result)

    async def _abort_bash(self, command: Command) -> Response:
        self._session.abort_bash()
        return Response.ok(command.id, "abort_bash")

    async def _list_directory(self, command: Command) -> Response:
        """Handle list_directory.

        Relative paths resolve against the session cwd and `~` expands to the
        home directory. Directories sort before files, then by name
        ignoring case.
        """
        cwd = Path(self._session.cwd)
        path = Path(str(command.get_param("path", str(cwd)))).expanduser()
        if not path.is_absolute():
            path = cwd / path
        path = path.resolve()

        if not path.is_dir():
            return Response.fail(command.id, "list_directory", f"Not a directory: {path}")

        entries = [{"name": child.name, "isDirectory": child.is_dir()} for child in path.iterdir()]
        entries.sort(key=lambda e: (not e["isDirectory"], e["name"].lower()))
        return Response.ok(
            command.id,
            "list_directory",
            {"absolutePath": str(path), "entries": entries},
        )

    # =========================================================================
    # Tools
    # =========================================================================

    async def _get_tools(self, command: Command) -> Response:
        all_tools = [
            {
                "name": tool.get("name"),
                "description": tool.get("description"),
                "parameters": tool.get("parameters"),
            }
            for tool in self._session.get_all_tools()
        ]
        return Response.ok(
            command.id,
            "get_tools",
            {"activeToolNames": self._session.get_active_tool_names(), "allTools": all_tools},
        )

    async def _set_active_tools(self, command: Command) -> Response:
        tool_names = command.require_param("toolNames")
        if not isinstance(tool_names, list):
            raise ValueError("toolNames must be a list")
        self._session.set_active_tools_by_name([str(name) for name in tool_names])
        return Response.ok(
            command.id,
            "set_active_tools",
            {"activeToolNames": self._session.get_active_tool_names()},
        )

    # =========================================================================
    # Session tree
    # =========================================================================

    async def _get_session_tree(self, command: Command) -> Response:
        tree = {
            "leafId": self._session.leaf_id,
            "nodes": [map_tree_node(node) for node in self._session.get_tree()],
        }
        return Response.ok(command.id, "get_session_tree", tree)

    async def _navigate_tree(self, command: Command) -> Response:
        result = await self._session.navigate_tree(
            command.require_param("targetId"),
            summarize=command.get_param("summarize"),
            custom_instructions=command.get_param("customInstructions"),
            replace_instructions=command.get_param("replaceInstructions"),
            label=command.get_param("label"),
        )
        cancelled = bool(result.get("cancelled"))
        if not cancelled:
            self._emit_session_changed(SessionChangeReason.TREE)
        return Response.ok(
            command.id,
            "navigate_tree",
            {"cancelled": cancelled, "editorText": result.get("editorText")},
        )

    async def _set_entry_label(self, command: Command) -> Response:
        label = command.get_param("label")
        normalized = label.strip() if isinstance(label, str) else None
        self._session.append_label_change(command.require_param("targetId"), normalized or None)
        return Response.ok(command.id, "set_entry_label")

    # =========================================================================
    # Resources
    # =========================================================================

    async def _reload_resources(self, command: Command) -> Response:
        await self._session.reload()
        self._emit_session_changed(SessionChangeReason.RELOAD)
        return Response.ok(command.id, "reload_resources", {"commands": self._session.get_commands()})

    async def _get_commands(self, command: Command) -> Response:
        return Response.ok(command.id, "get_commands", {"commands": self._session.get_commands()})

    async def _export_html(self, command: Command) -> Response:
        path = await self._session.export_html(command.get_param("outputPath"))
        return Response.ok(command.id, "export_html", {"path": path})
