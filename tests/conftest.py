"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio

from agent_session_runtime.server import ProtocolServer
from agent_session_runtime.transport.hub import ClientConnection

# =============================================================================
# Stub session
# =============================================================================


class StubSession:
    """In-memory AgentSession used across the suite.

    Records every operation in `calls` as (name, args...) tuples and emits
    a minimal event sequence from `prompt`.
    """

    def __init__(self, cwd: str = "/tmp") -> None:
        self.session_id = "sess-1"
        self.session_file: str | None = "/sessions/sess-1.jsonl"
        self.session_name: str | None = None
        self.cwd = cwd
        self.model: Any = {"provider": "test", "id": "model-1"}
        self.thinking_level = "medium"
        self.is_streaming = False
        self.is_compacting = False
        self.auto_compaction_enabled = True
        self.auto_retry_enabled = True
        self.steering_mode = "one-at-a-time"
        self.follow_up_mode = "one-at-a-time"
        self.pending_message_count = 0
        self.messages: list[dict[str, Any]] = []
        self.leaf_id: str | None = None

        self.calls: list[tuple[Any, ...]] = []
        self.cancel_next = False
        self.prompt_error: Exception | None = None
        self.prompt_gate: asyncio.Event | None = None
        self.histories: dict[str, list[dict[str, Any]]] = {}
        self.queue: dict[str, list[str]] = {"steering": [], "followUp": []}
        self.tree: list[dict[str, Any]] = []
        self.active_tools = ["read", "bash"]
        self.models: list[dict[str, Any]] = [
            {"provider": "test", "id": "model-1"},
            {"provider": "test", "id": "model-2"},
        ]
        self.ui_context: Any = None
        self.on_extension_error: Callable[[dict[str, Any]], None] | None = None
        self._listeners: list[Callable[[dict[str, Any]], None]] = []
        self._session_counter = 1

    def called(self, name: str) -> list[tuple[Any, ...]]:
        return [call[1:] for call in self.calls if call[0] == name]

    def emit(self, event: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(event)

    # Wiring

    def subscribe(self, listener: Callable[[dict[str, Any]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def bind_extensions(self, ui_context: Any, on_error: Callable[[dict[str, Any]], None]) -> None:
        self.ui_context = ui_context
        self.on_extension_error = on_error

    # Prompting

    async def prompt(
        self,
        message: str,
        images: list[dict[str, Any]] | None = None,
        streaming_behavior: str | None = None,
    ) -> None:
        self.calls.append(("prompt", message, images, streaming_behavior))
        if self.prompt_error is not None:
            raise self.prompt_error

        user_message = {"role": "user", "content": [{"type": "text", "text": message}]}
        self.is_streaming = True
        self.emit({"type": "agent_start"})
        self.emit({"type": "message_start", "message": user_message})
        self.emit({"type": "message_end", "message": user_message})
        self.messages.append(user_message)
        if self.prompt_gate is not None:
            await self.prompt_gate.wait()

        reply = {"role": "assistant", "content": [{"type": "text", "text": f"echo: {message}"}]}
        self.emit({"type": "message_start", "message": reply})
        self.emit(
            {
                "type": "message_update",
                "assistantMessageEvent": {"type": "text_delta", "delta": f"echo: {message}"},
            }
        )
        self.emit({"type": "message_end", "message": reply})
        self.messages.append(reply)
        self.is_streaming = False
        self.emit({"type": "agent_end"})

    async def steer(self, message: str, images: list[dict[str, Any]] | None = None) -> None:
        self.calls.append(("steer", message, images))
        self.queue["steering"].append(message)

    async def follow_up(self, message: str, images: list[dict[str, Any]] | None = None) -> None:
        self.calls.append(("follow_up", message, images))
        self.queue["followUp"].append(message)

    async def abort(self) -> None:
        self.calls.append(("abort",))

    def clear_queue(self) -> dict[str, Any]:
        self.calls.append(("clear_queue",))
        cleared, self.queue = self.queue, {"steering": [], "followUp": []}
        return cleared

    # Session lifecycle

    async def new_session(self, parent_session: str | None = None, cwd: str | None = None) -> bool:
        self.calls.append(("new_session", parent_session, cwd))
        if self.cancel_next:
            return False
        self._session_counter += 1
        self.session_id = f"sess-{self._session_counter}"
        self.session_file = f"/sessions/{self.session_id}.jsonl"
        self.session_name = None
        self.messages = []
        self.leaf_id = None
        return True

    async def switch_session(self, path: str) -> bool:
        self.calls.append(("switch_session", path))
        if self.cancel_next:
            return False
        self.session_id = Path(path).stem
        self.session_file = path
        self.messages = list(self.histories.get(path, []))
        self.leaf_id = f"{self.session_id}-leaf" if self.messages else None
        return True

    async def fork(self, entry_id: str) -> dict[str, Any]:
        self.calls.append(("fork", entry_id))
        if self.cancel_next:
            return {"cancelled": True}
        self.session_id = f"{self.session_id}-fork"
        return {"selectedText": "forked prompt", "cancelled": False}

    def get_fork_messages(self) -> list[dict[str, Any]]:
        return [{"entryId": "e1", "text": "first prompt"}]

    async def list_sessions(self, scope: str, session_dir: str | None = None) -> list[dict[str, Any]]:
        self.calls.append(("list_sessions", scope, session_dir))
        return [{"id": self.session_id, "path": self.session_file}]

    def set_session_name(self, name: str) -> None:
        self.calls.append(("set_session_name", name))
        self.session_name = name

    async def reload(self) -> None:
        self.calls.append(("reload",))

    # Settings and stats

    async def get_available_models(self) -> list[dict[str, Any]]:
        return list(self.models)

    async def set_model(self, model: dict[str, Any]) -> None:
        self.calls.append(("set_model", model))
        self.model = model

    async def cycle_model(self) -> Any:
        if len(self.models) < 2:
            return None
        index = self.models.index(self.model) if self.model in self.models else -1
        self.model = self.models[(index + 1) % len(self.models)]
        return {"model": self.model, "thinkingLevel": self.thinking_level, "isScoped": False}

    def set_thinking_level(self, level: str) -> None:
        self.thinking_level = level

    def cycle_thinking_level(self) -> str | None:
        if self.thinking_level == "off":
            return None
        self.thinking_level = "high"
        return self.thinking_level

    def set_steering_mode(self, mode: str) -> None:
        self.steering_mode = mode

    def set_follow_up_mode(self, mode: str) -> None:
        self.follow_up_mode = mode

    async def compact(self, custom_instructions: str | None = None) -> Any:
        self.calls.append(("compact", custom_instructions))
        return {"summary": "compacted", "tokensBefore": 1000}

    def set_auto_compaction(self, enabled: bool) -> None:
        self.auto_compaction_enabled = enabled

    def set_auto_retry(self, enabled: bool) -> None:
        self.auto_retry_enabled = enabled

    def abort_retry(self) -> None:
        self.calls.append(("abort_retry",))

    def get_context_usage(self) -> Any:
        return {"tokens": 1200, "contextWindow": 200000, "percent": 0.6}

    def get_session_stats(self) -> Any:
        return {"sessionId": self.session_id, "totalMessages": len(self.messages)}

    def get_last_assistant_text(self) -> str | None:
        return "last reply"

    # Shell and tools

    async def execute_bash(self, command: str) -> dict[str, Any]:
        self.calls.append(("execute_bash", command))
        return {"output": f"ran {command}\n", "exitCode": 0, "cancelled": False}

    def abort_bash(self) -> None:
        self.calls.append(("abort_bash",))

    def get_active_tool_names(self) -> list[str]:
        return list(self.active_tools)

    def get_all_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": "read",
                "description": "Read a file",
                "parameters": {"type": "object", "properties": {"path": {"type": "string"}}},
                "execute": object(),
            },
            {"name": "bash", "description": "Run a command", "parameters": {"type": "object"}},
            {"name": "write", "description": "Write a file", "parameters": {"type": "object"}},
        ]

    def set_active_tools_by_name(self, names: list[str]) -> None:
        self.active_tools = list(names)

    # Session tree

    def get_tree(self) -> list[dict[str, Any]]:
        return self.tree

    async def navigate_tree(self, target_id: str, **options: Any) -> dict[str, Any]:
        self.calls.append(("navigate_tree", target_id, options))
        if self.cancel_next:
            return {"cancelled": True}
        self.leaf_id = target_id
        return {"cancelled": False, "editorText": "edit me"}

    def append_label_change(self, target_id: str, label: str | None) -> None:
        self.calls.append(("append_label_change", target_id, label))

    # Resources

    def get_commands(self) -> list[dict[str, Any]]:
        return [{"name": "review", "description": "Review the diff", "source": "prompt"}]

    async def export_html(self, output_path: str | None = None) -> str:
        self.calls.append(("export_html", output_path))
        return output_path or f"{self.cwd}/{self.session_id}.html"


# =============================================================================
# Recording connection
# =============================================================================


class RecordingConnection(ClientConnection):
    """Connection that keeps every frame written to it, decoded."""

    def __init__(self, connection_id: str | None = None) -> None:
        super().__init__(connection_id)
        self.frames: list[dict[str, Any]] = []

    async def _write(self, text: str) -> None:
        self.frames.append(json.loads(text))

    def of_type(self, frame_type: str) -> list[dict[str, Any]]:
        return [frame for frame in self.frames if frame.get("type") == frame_type]

    async def wait_for(self, predicate: Callable[[list[dict[str, Any]]], bool], timeout: float = 1.0) -> None:
        """Wait until `predicate(frames)` holds."""

        async def poll() -> None:
            while not predicate(self.frames):
                await asyncio.sleep(0.001)

        await asyncio.wait_for(poll(), timeout=timeout)

    async def wait_for_response(self, command_id: str, timeout: float = 1.0) -> dict[str, Any]:
        await self.wait_for(
            lambda frames: any(f.get("type") == "response" and f.get("id") == command_id for f in frames),
            timeout=timeout,
        )
        return next(f for f in self.frames if f.get("type") == "response" and f.get("id") == command_id)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def session(tmp_path: Path) -> StubSession:
    return StubSession(cwd=str(tmp_path))


@pytest_asyncio.fixture
async def server(session: StubSession):
    server = ProtocolServer(session)
    await server.bind()
    yield server
    await server.shutdown()


@pytest.fixture
def make_connection(server: ProtocolServer) -> Callable[[], RecordingConnection]:
    def make() -> RecordingConnection:
        connection = RecordingConnection()
        server.hub.add(connection)
        return connection

    return make


@pytest_asyncio.fixture
async def connection(make_connection: Callable[[], RecordingConnection]) -> RecordingConnection:
    return make_connection()
