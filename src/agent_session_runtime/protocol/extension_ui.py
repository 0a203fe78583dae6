"""Extension UI bridge for protocol transports.

Session extensions call dialog methods (select, confirm, input, editor) as
if a UI were attached locally. The bridge turns each call into an
`extension_ui_request` broadcast and waits for the matching
`extension_ui_response`. A timeout or an abort signal resolves the dialog
with its default value instead; cancellation is never raised to the caller.

Implements the UI context protocol expected by `AgentSession.bind_extensions`.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .commands import ExtensionUIResponse
from .events import DialogMethod, ExtensionUIRequest

logger = logging.getLogger(__name__)

OutputFn = Callable[[dict[str, Any]], None]


@dataclass
class PendingDialogRequest:
    """A dialog waiting for a client answer, a timeout, or an abort."""

    request_id: str
    method: DialogMethod
    default: Any
    future: asyncio.Future[Any]
    timeout_handle: asyncio.TimerHandle | None = None
    abort_task: asyncio.Task[None] | None = None
    settled: bool = False

    def settle(self, value: Any) -> bool:
        """Resolve the dialog once. Later calls are ignored.

        Returns:
            True if this call resolved the dialog
        """
        if self.settled:
            return False
        self.settled = True

        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None
        if self.abort_task is not None and self.abort_task is not asyncio.current_task():
            self.abort_task.cancel()
        self.abort_task = None

        if not self.future.done():
            self.future.set_result(value)
        return True


def _parse_value(response: ExtensionUIResponse) -> Any:
    if response.cancelled:
        return None
    return response.value


def _parse_confirmed(response: ExtensionUIResponse) -> bool:
    if response.cancelled or response.confirmed is None:
        return False
    return response.confirmed


_PARSERS: dict[DialogMethod, Callable[[ExtensionUIResponse], Any]] = {
    DialogMethod.SELECT: _parse_value,
    DialogMethod.CONFIRM: _parse_confirmed,
    DialogMethod.INPUT: _parse_value,
    DialogMethod.EDITOR: _parse_value,
}


class ExtensionUIBridge:
    """UI context that serializes dialog calls over the protocol.

    Every dialog id is a fresh UUID and is removed from the pending map by
    exactly one of: a client response, the timeout, or the abort signal.
    """

    def __init__(self, output: OutputFn, default_timeout: float | None = None) -> None:
        """Initialize the bridge.

        Args:
            output: Function broadcasting one message to all clients
            default_timeout: Seconds to wait when a dialog call gives no timeout
        """
        self._output = output
        self._default_timeout = default_timeout
        self._pending: dict[str, PendingDialogRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # =========================================================================
    # Dialogs
    # =========================================================================

    async def select(
        self,
        title: str,
        options: list[str],
        *,
        timeout: float | None = None,
        signal: asyncio.Event | None = None,
    ) -> str | None:
        """Ask the client to pick one of `options`. Defaults to None."""
        return await self._dialog(
            DialogMethod.SELECT,
            None,
            {"title": title, "options": options},
            timeout=timeout,
            signal=signal,
        )

    async def confirm(
        self,
        title: str,
        message: str,
        *,
        timeout: float | None = None,
        signal: asyncio.Event | None = None,
    ) -> bool:
        """Ask the client a yes/no question. Defaults to False."""
        return await self._dialog(
            DialogMethod.CONFIRM,
            False,
            {"title": title, "message": message},
            timeout=timeout,
            signal=signal,
        )

    async def input(
        self,
        title: str,
        placeholder: str | None = None,
        *,
        timeout: float | None = None,
        signal: asyncio.Event | None = None,
    ) -> str | None:
        """Ask the client for a line of text. Defaults to None."""
        return await self._dialog(
            DialogMethod.INPUT,
            None,
            {"title": title, "placeholder": placeholder},
            timeout=timeout,
            signal=signal,
        )

    async def editor(
        self,
        title: str,
        prefill: str | None = None,
        *,
        timeout: float | None = None,
        signal: asyncio.Event | None = None,
    ) -> str | None:
        """Ask the client to edit a block of text. Defaults to None."""
        return await self._dialog(
            DialogMethod.EDITOR,
            None,
            {"title": title, "prefill": prefill},
            timeout=timeout,
            signal=signal,
        )

    async def _dialog(
        self,
        method: DialogMethod,
        default: Any,
        payload: dict[str, Any],
        *,
        timeout: float | None,
        signal: asyncio.Event | None,
    ) -> Any:
        if signal is not None and signal.is_set():
            return default

        if timeout is None:
            timeout = self._default_timeout

        loop = asyncio.get_running_loop()
        request_id = str(uuid.uuid4())
        pending = PendingDialogRequest(
            request_id=request_id,
            method=method,
            default=default,
            future=loop.create_future(),
        )
        self._pending[request_id] = pending

        if timeout is not None and timeout > 0:
            pending.timeout_handle = loop.call_later(timeout, self._settle, request_id, default)
        if signal is not None:
            pending.abort_task = loop.create_task(self._watch_signal(request_id, signal, default))

        request = ExtensionUIRequest(
            id=request_id,
            method=method,
            timeout=int(timeout * 1000) if timeout else None,
            **payload,
        )
        try:
            self._output(request.to_wire())
            logger.debug(f"Sent {method.value} dialog {request_id}")
            return await pending.future
        finally:
            # Covers output failures and callers cancelled while waiting
            self._settle(request_id, default)

    async def _watch_signal(self, request_id: str, signal: asyncio.Event, default: Any) -> None:
        await signal.wait()
        if self._settle(request_id, default):
            logger.debug(f"Dialog {request_id} aborted")

    def _settle(self, request_id: str, value: Any) -> bool:
        pending = self._pending.pop(request_id, None)
        if pending is None:
            return False
        return pending.settle(value)

    def resolve_response(self, response: ExtensionUIResponse) -> bool:
        """Handle an `extension_ui_response` from a client.

        Returns:
            True if a pending dialog was resolved, False if the id is unknown
        """
        pending = self._pending.get(response.id)
        if pending is None:
            logger.warning(f"No pending dialog for response {response.id}")
            return False
        return self._settle(response.id, _PARSERS[pending.method](response))

    def cancel_all(self) -> int:
        """Resolve every pending dialog with its default value.

        Returns:
            Number of dialogs resolved
        """
        count = 0
        for request_id, pending in list(self._pending.items()):
            if self._settle(request_id, pending.default):
                count += 1
        return count

    # =========================================================================
    # Fire-and-forget requests
    # =========================================================================

    def _fire(self, method: DialogMethod, **payload: Any) -> None:
        request = ExtensionUIRequest(id=str(uuid.uuid4()), method=method, **payload)
        self._output(request.to_wire())

    def notify(self, message: str, notify_type: str | None = None) -> None:
        self._fire(DialogMethod.NOTIFY, message=message, notifyType=notify_type)

    def set_status(self, key: str, text: str | None) -> None:
        self._fire(DialogMethod.SET_STATUS, statusKey=key, statusText=text)

    def set_widget(self, key: str, content: Any, placement: str | None = None) -> None:
        """Show or clear a widget. Only line lists are sent; components are skipped."""
        if content is not None and not isinstance(content, list):
            logger.debug(f"Widget {key} has non-list content, not sent")
            return
        self._fire(
            DialogMethod.SET_WIDGET,
            widgetKey=key,
            widgetLines=content,
            widgetPlacement=placement,
        )

    def set_title(self, title: str) -> None:
        self._fire(DialogMethod.SET_TITLE, title=title)

    def set_editor_text(self, text: str) -> None:
        self._fire(DialogMethod.SET_EDITOR_TEXT, text=text)

    def paste_to_editor(self, text: str) -> None:
        self.set_editor_text(text)

    # =========================================================================
    # Not supported over the protocol
    # =========================================================================

    def set_working_message(self, message: str | None = None) -> None:
        pass

    def set_footer(self, factory: Any) -> None:
        pass

    def set_header(self, factory: Any) -> None:
        pass

    def set_editor_component(self, factory: Any = None) -> None:
        pass

    async def custom(self, *args: Any, **kwargs: Any) -> None:
        return None

    def get_editor_text(self) -> str:
        return ""

    def get_tools_expanded(self) -> bool:
        return False

    def set_tools_expanded(self, expanded: bool) -> None:
        pass

    def get_all_themes(self) -> list[Any]:
        return []

    def get_theme(self, name: str) -> None:
        return None

    def set_theme(self, theme: Any) -> dict[str, Any]:
        return {"success": False, "error": "Theme switching not supported in protocol mode"}

    def on_terminal_input(self, handler: Callable[[str], Any]) -> Callable[[], None]:
        return lambda: None
