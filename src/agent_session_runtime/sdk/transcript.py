"""Client-side transcript reconciliation.

Folds the server event stream (plus the history fetched with
`get_messages`) into an ordered list of render-ready `UiMessage`s.

Only the currently active streaming text, streaming thinking and tool step
are ever mutated in place; everything else is append-only until the next
session change. Events that do not fit the current state are ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..protocol.events import AssistantEventType, EventType

logger = logging.getLogger(__name__)

ARGS_PREVIEW_LENGTH = 200


class UiMessageKind(str, Enum):
    """What a transcript entry renders as."""

    USER = "user"
    ASSISTANT = "assistant"
    THINKING = "thinking"
    TOOL = "tool"
    BASH = "bash"
    ERROR = "error"
    SYSTEM = "system"


class ToolStepPhase(str, Enum):
    """Lifecycle of one tool invocation."""

    CALLING = "calling"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ToolStepPhase.DONE, ToolStepPhase.ERROR)


_PHASE_ORDER = {
    ToolStepPhase.CALLING: 0,
    ToolStepPhase.RUNNING: 1,
    ToolStepPhase.DONE: 2,
    ToolStepPhase.ERROR: 2,
}


@dataclass
class ToolStep:
    """UI state of one tool call."""

    tool_name: str
    args_preview: str
    phase: ToolStepPhase = ToolStepPhase.CALLING
    result: str | None = None

    def advance(self, phase: ToolStepPhase, result: str | None = None) -> bool:
        """Move forward to `phase`.

        Terminal phases never change and phases never regress.

        Returns:
            True if the phase changed
        """
        if self.phase.is_terminal or _PHASE_ORDER[phase] <= _PHASE_ORDER[self.phase]:
            return False
        self.phase = phase
        if result is not None:
            self.result = result
        return True


@dataclass
class BashResult:
    command: str
    output: str
    exit_code: int | None = None


@dataclass
class UiMessage:
    """One render-ready transcript entry."""

    id: str
    kind: UiMessageKind
    text: str
    tool_step: ToolStep | None = None
    bash_result: BashResult | None = None
    images: list[dict[str, Any]] | None = None


@dataclass
class Turn:
    user: UiMessage
    steps: list[UiMessage] = field(default_factory=list)


@dataclass
class TurnGroups:
    orphans: list[UiMessage]
    turns: list[Turn]


# =============================================================================
# Pure helpers
# =============================================================================


def extract_result_text(value: Any) -> str:
    """Plain text of a tool result.

    Accepts a string, an object whose `content` is a list of text parts, or
    anything else (serialized as JSON, or `str()` as a last resort).
    """
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("content"), list):
        texts = [
            part["text"]
            for part in value["content"]
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        if texts:
            return "".join(texts)
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def args_preview(arguments: Any) -> str:
    """Compact JSON of tool arguments, truncated for display."""
    try:
        text = json.dumps(
            arguments if arguments is not None else {},
            separators=(",", ":"),
            ensure_ascii=False,
        )
    except (TypeError, ValueError):
        text = str(arguments)
    if len(text) > ARGS_PREVIEW_LENGTH:
        return f"{text[:ARGS_PREVIEW_LENGTH]}..."
    return text


def message_text(content: Any) -> str:
    """Text of a user message's content (a string or a list of parts)."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") == "text" and isinstance(part.get("text"), str)
        )
    return ""


def _message_images(content: Any) -> list[dict[str, Any]] | None:
    if not isinstance(content, list):
        return None
    images = [part for part in content if isinstance(part, dict) and part.get("type") == "image"]
    return images or None


def group_turns(messages: list[UiMessage]) -> TurnGroups:
    """Group messages into turns, each starting at a user message.

    Messages before the first user message are orphans.
    """
    orphans: list[UiMessage] = []
    turns: list[Turn] = []
    current: Turn | None = None

    for message in messages:
        if message.kind == UiMessageKind.USER:
            current = Turn(user=message)
            turns.append(current)
        elif current is None:
            orphans.append(message)
        else:
            current.steps.append(message)

    return TurnGroups(orphans=orphans, turns=turns)


def last_user_message(messages: list[UiMessage]) -> UiMessage | None:
    for message in reversed(messages):
        if message.kind == UiMessageKind.USER:
            return message
    return None


# =============================================================================
# Transcript
# =============================================================================


class SessionTranscript:
    """Derived, render-ready state for the session a client is looking at.

    Attributes:
        messages: The transcript, in display order
        scheduled: User messages sent while streaming, awaiting the server echo
        streaming: Whether a turn is open
        session_id: The session this transcript belongs to, per `session_changed`
    """

    def __init__(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self.messages: list[UiMessage] = []
        self.scheduled: list[UiMessage] = []
        self.streaming = False
        self._next_id = 0
        self._scheduled_requests: dict[str, UiMessage] = {}
        self._active_text_id: str | None = None
        self._active_thinking_id: str | None = None
        self._active_tool_step_id: str | None = None

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def _new_message(self, kind: UiMessageKind, text: str, **extra: Any) -> UiMessage:
        self._next_id += 1
        return UiMessage(id=f"msg_{self._next_id}", kind=kind, text=text, **extra)

    def _new_tool_step(self, tool_name: str, arguments: Any) -> UiMessage:
        preview = args_preview(arguments)
        return self._new_message(
            UiMessageKind.TOOL,
            f"{tool_name}({preview})",
            tool_step=ToolStep(tool_name=tool_name, args_preview=preview),
        )

    def _append(self, kind: UiMessageKind, text: str) -> UiMessage:
        message = self._new_message(kind, text)
        self.messages.append(message)
        return message

    def _find(self, message_id: str | None) -> UiMessage | None:
        if message_id is None:
            return None
        for message in reversed(self.messages):
            if message.id == message_id:
                return message
        return None

    def add_user_message(self, text: str, images: list[dict[str, Any]] | None = None) -> UiMessage:
        message = self._new_message(UiMessageKind.USER, text, images=images or None)
        self.messages.append(message)
        return message

    def add_error_message(self, text: str) -> UiMessage:
        return self._append(UiMessageKind.ERROR, text)

    def add_bash_result(self, command: str, output: str, exit_code: int | None) -> UiMessage:
        message = self._new_message(
            UiMessageKind.BASH,
            f"$ {command}\n{output}",
            bash_result=BashResult(command=command, output=output, exit_code=exit_code),
        )
        self.messages.append(message)
        return message

    # -------------------------------------------------------------------------
    # Steering queue
    # -------------------------------------------------------------------------

    def schedule_message(
        self,
        text: str,
        images: list[dict[str, Any]] | None = None,
        request_id: str | None = None,
    ) -> UiMessage:
        """Hold a user message until the server echoes it back.

        With `request_id`, a failed `prompt` Response carrying that id
        withdraws the message again.
        """
        message = self._new_message(UiMessageKind.USER, text, images=images or None)
        self.scheduled.append(message)
        if request_id is not None:
            self._scheduled_requests[request_id] = message
        return message

    def consume_scheduled(self, text: str) -> UiMessage | None:
        """Remove and return the oldest scheduled message with exactly this text."""
        for index, message in enumerate(self.scheduled):
            if message.kind == UiMessageKind.USER and message.text == text:
                return self._forget(self.scheduled.pop(index))
        return None

    def discard_scheduled(self, message: UiMessage) -> bool:
        """Withdraw a scheduled message the server will never echo."""
        if message not in self.scheduled:
            return False
        self.scheduled.remove(message)
        self._forget(message)
        return True

    def clear_scheduled(self) -> list[UiMessage]:
        cleared, self.scheduled = self.scheduled, []
        self._scheduled_requests.clear()
        return cleared

    def _forget(self, message: UiMessage) -> UiMessage:
        for request_id, tracked in list(self._scheduled_requests.items()):
            if tracked is message:
                del self._scheduled_requests[request_id]
        return message

    # -------------------------------------------------------------------------
    # Resets
    # -------------------------------------------------------------------------

    def reset_active(self) -> None:
        self._active_text_id = None
        self._active_thinking_id = None
        self._active_tool_step_id = None

    def reset(self, session_id: str | None = None) -> None:
        """Drop all per-session state, e.g. before loading another session."""
        self.session_id = session_id
        self.messages = []
        self.scheduled = []
        self._scheduled_requests.clear()
        self.streaming = False
        self.reset_active()

    # -------------------------------------------------------------------------
    # History
    # -------------------------------------------------------------------------

    def load_history(self, history: list[dict[str, Any]]) -> list[UiMessage]:
        """Replace the transcript with messages converted from session history.

        A `toolResult` updates the tool step created for its call rather than
        adding a message of its own.
        """
        messages: list[UiMessage] = []
        tool_steps: dict[str, UiMessage] = {}

        for entry in history:
            if not isinstance(entry, dict):
                continue
            role = entry.get("role")
            content = entry.get("content")

            if role == "user":
                messages.append(
                    self._new_message(
                        UiMessageKind.USER,
                        message_text(content),
                        images=_message_images(content),
                    )
                )
            elif role == "assistant" and isinstance(content, list):
                for part in content:
                    messages.extend(self._convert_assistant_part(part, tool_steps))
            elif role == "toolResult":
                step = tool_steps.get(entry.get("toolCallId", ""))
                if step is not None and step.tool_step is not None:
                    phase = ToolStepPhase.ERROR if entry.get("isError") else ToolStepPhase.DONE
                    step.tool_step.advance(phase, message_text(content))

        self.messages = messages
        self.reset_active()
        return messages

    def _convert_assistant_part(self, part: Any, tool_steps: dict[str, UiMessage]) -> list[UiMessage]:
        if not isinstance(part, dict):
            return []
        match part.get("type"):
            case "text":
                text = part.get("text") or ""
                return [self._new_message(UiMessageKind.ASSISTANT, text)] if text.strip() else []
            case "thinking":
                thinking = part.get("thinking") or ""
                return [self._new_message(UiMessageKind.THINKING, thinking)] if thinking.strip() else []
            case "toolCall":
                message = self._new_tool_step(str(part.get("name", "")), part.get("arguments"))
                if part.get("id"):
                    tool_steps[part["id"]] = message
                return [message]
        return []

    # -------------------------------------------------------------------------
    # Live events
    # -------------------------------------------------------------------------

    def handle_event(self, event: dict[str, Any]) -> bool:
        """Apply one server event.

        Returns:
            True if the transcript (messages, scheduled or streaming) changed
        """
        if not isinstance(event, dict):
            return False

        match event.get("type"):
            case EventType.AGENT_START:
                self.streaming = True
                self.reset_active()
                return True
            case EventType.AGENT_END:
                self.streaming = False
                self.reset_active()
                return True
            case EventType.MESSAGE_START:
                return self._apply_message_start(event)
            case EventType.MESSAGE_UPDATE:
                return self._apply_message_update(event)
            case EventType.MESSAGE_END:
                self._active_text_id = None
                self._active_thinking_id = None
                return False
            case EventType.TOOL_EXECUTION_START:
                return self._apply_tool_execution_start()
            case EventType.TOOL_EXECUTION_END:
                return self._apply_tool_execution_end(event)
            case EventType.RESPONSE:
                return self._apply_response(event)
            case EventType.SESSION_CHANGED:
                self.reset(event.get("sessionId"))
                return True
            case EventType.EXTENSION_UI_REQUEST:
                return self._apply_extension_ui_request(event)
            case EventType.EXTENSION_ERROR:
                self._append(UiMessageKind.ERROR, f"Extension error: {event.get('error')}")
                return True
        return False

    def _apply_message_start(self, event: dict[str, Any]) -> bool:
        message = event.get("message")
        if not isinstance(message, dict) or message.get("role") != "user":
            return False
        scheduled = self.consume_scheduled(message_text(message.get("content")))
        if scheduled is None:
            return False
        self.messages.append(scheduled)
        self._active_text_id = None
        self._active_thinking_id = None
        return True

    def _apply_message_update(self, event: dict[str, Any]) -> bool:
        sub_event = event.get("assistantMessageEvent")
        if not isinstance(sub_event, dict):
            return False

        match sub_event.get("type"):
            case AssistantEventType.TEXT_DELTA:
                target = self._find(self._active_text_id)
                if target is None:
                    target = self._append(UiMessageKind.ASSISTANT, "")
                    self._active_text_id = target.id
                target.text += str(sub_event.get("delta", ""))
                return True
            case AssistantEventType.TEXT_END:
                self._active_text_id = None
                return False
            case AssistantEventType.THINKING_DELTA:
                target = self._find(self._active_thinking_id)
                if target is None:
                    target = self._append(UiMessageKind.THINKING, "")
                    self._active_thinking_id = target.id
                target.text += str(sub_event.get("delta", ""))
                return True
            case AssistantEventType.THINKING_END:
                self._active_thinking_id = None
                return False
            case AssistantEventType.TOOLCALL_END:
                tool_call = sub_event.get("toolCall")
                if not isinstance(tool_call, dict):
                    return False
                message = self._new_tool_step(str(tool_call.get("name", "")), tool_call.get("arguments"))
                self.messages.append(message)
                self._active_tool_step_id = message.id
                self._active_text_id = None
                self._active_thinking_id = None
                return True
        return False

    def _apply_tool_execution_start(self) -> bool:
        self._active_text_id = None
        self._active_thinking_id = None
        step = self._find(self._active_tool_step_id)
        if step is None or step.tool_step is None:
            return False
        return step.tool_step.advance(ToolStepPhase.RUNNING)

    def _apply_tool_execution_end(self, event: dict[str, Any]) -> bool:
        step = self._find(self._active_tool_step_id)
        if step is None or step.tool_step is None:
            return False
        phase = ToolStepPhase.ERROR if event.get("isError") else ToolStepPhase.DONE
        changed = step.tool_step.advance(phase, extract_result_text(event.get("result")))
        self._active_tool_step_id = None
        return changed

    def _apply_response(self, event: dict[str, Any]) -> bool:
        if event.get("success", True):
            return False
        if event.get("command") == "prompt":
            scheduled = self._scheduled_requests.get(event.get("id"))
            if scheduled is not None:
                self.discard_scheduled(scheduled)
        error = event.get("error") or "unknown error"
        self._append(UiMessageKind.ERROR, f"Command error ({event.get('command')}): {error}")
        return True

    def _apply_extension_ui_request(self, event: dict[str, Any]) -> bool:
        method = event.get("method")
        if method == "notify" and event.get("message"):
            self._append(UiMessageKind.SYSTEM, str(event["message"]))
            return True
        if method == "set_editor_text" and event.get("text"):
            self._append(UiMessageKind.SYSTEM, "Extension updated editor text")
            return True
        return False
