"""Unit tests for client transports and the typed protocol client."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from agent_session_runtime.config import RuntimeConfig
from agent_session_runtime.errors import RequestTimeoutError, TransportClosedError
from agent_session_runtime.protocol.commands import Command
from agent_session_runtime.sdk.client import ProtocolClient
from agent_session_runtime.sdk.transport import (
    BaseClientTransport,
    ClientTransport,
    ClientTransportConfig,
    TransportState,
    WebSocketClientTransport,
)


class FakeTransport(BaseClientTransport):
    """Transport whose peer is a callable producing reply frames."""

    def __init__(
        self,
        reply: Callable[[dict[str, Any]], list[dict[str, Any]]] | None = None,
        timeout: float = 1.0,
        fail_connect: bool = False,
    ) -> None:
        super().__init__(ClientTransportConfig(timeout=timeout))
        self.reply = reply
        self.fail_connect = fail_connect
        self.sent: list[dict[str, Any]] = []
        self.inbound: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    async def _do_connect(self) -> None:
        if self.fail_connect:
            raise OSError("connection refused")

    async def _do_disconnect(self) -> None:
        self.inbound.put_nowait(None)

    async def _do_send(self, obj: dict[str, Any]) -> None:
        self.sent.append(obj)
        if self.reply is not None:
            for frame in self.reply(obj):
                self.inbound.put_nowait(frame)

    async def _receive_frames(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            frame = await self.inbound.get()
            if frame is None:
                return
            yield frame

    def drop_peer(self) -> None:
        self.inbound.put_nowait(None)


def echo_ok(data: Any = None) -> Callable[[dict[str, Any]], list[dict[str, Any]]]:
    def reply(frame: dict[str, Any]) -> list[dict[str, Any]]:
        response = {"type": "response", "id": frame.get("id"), "command": frame["type"], "success": True}
        if data is not None:
            response["data"] = data
        return [response]

    return reply


# =============================================================================
# BaseClientTransport
# =============================================================================


class TestBaseClientTransport:
    """Connection state, correlation and failure handling."""

    @pytest.mark.asyncio
    async def test_satisfies_protocol(self):
        """Concrete transports satisfy the ClientTransport protocol."""
        assert isinstance(FakeTransport(), ClientTransport)
        assert isinstance(WebSocketClientTransport(), ClientTransport)

    @pytest.mark.asyncio
    async def test_connect_and_disconnect_notify_status(self):
        """Status listeners see connect and disconnect."""
        transport = FakeTransport()
        statuses: list[bool] = []
        transport.add_status_listener(statuses.append)

        async with transport:
            assert transport.state == TransportState.CONNECTED
            assert transport.is_connected

        assert transport.state == TransportState.DISCONNECTED
        assert statuses == [True, False]

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        """Failures during connect become ConnectionError."""
        transport = FakeTransport(fail_connect=True)

        with pytest.raises(ConnectionError, match="Failed to connect"):
            await transport.connect()

        assert transport.state == TransportState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_request_assigns_sequential_ids(self):
        """Commands without an id get req_1, req_2, ..."""
        async with FakeTransport(reply=echo_ok()) as transport:
            first = await transport.request(Command.create("get_state"))
            second = await transport.request(Command.create("abort"))

        assert [frame["id"] for frame in transport.sent] == ["req_1", "req_2"]
        assert first["command"] == "get_state"
        assert second["command"] == "abort"
        assert transport.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_keeps_explicit_id(self):
        """An id set by the caller is sent unchanged."""
        async with FakeTransport(reply=echo_ok()) as transport:
            response = await transport.request(Command.create("get_state", command_id="mine"))

        assert response["id"] == "mine"

    @pytest.mark.asyncio
    async def test_request_replaces_empty_id(self):
        """An empty id is replaced so the Response can be correlated."""
        async with FakeTransport(reply=echo_ok()) as transport:
            response = await transport.request(Command.create("get_state", command_id=""))

        assert transport.sent[0]["id"] == "req_1"
        assert response["id"] == "req_1"
        assert transport.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        """No Response within the timeout raises RequestTimeoutError."""
        async with FakeTransport(timeout=0.05) as transport:
            with pytest.raises(RequestTimeoutError) as exc_info:
                await transport.request(Command.create("get_state"))

            assert exc_info.value.command == "get_state"
            assert transport.pending_count == 0

    @pytest.mark.asyncio
    async def test_request_when_not_connected(self):
        """Requests on a closed transport fail immediately."""
        with pytest.raises(TransportClosedError):
            await FakeTransport().request(Command.create("get_state"))

    @pytest.mark.asyncio
    async def test_disconnect_rejects_pending(self):
        """Outstanding requests fail when the client disconnects."""
        transport = FakeTransport()
        await transport.connect()
        task = asyncio.create_task(transport.request(Command.create("get_state")))
        await asyncio.sleep(0.01)

        await transport.disconnect()

        with pytest.raises(TransportClosedError, match="disconnected"):
            await task

    @pytest.mark.asyncio
    async def test_peer_loss_rejects_pending(self):
        """Outstanding requests fail when the peer goes away."""
        transport = FakeTransport()
        statuses: list[bool] = []
        transport.add_status_listener(statuses.append)
        await transport.connect()
        task = asyncio.create_task(transport.request(Command.create("get_state")))
        await asyncio.sleep(0.01)

        transport.drop_peer()

        with pytest.raises(TransportClosedError, match="Connection closed"):
            await task
        assert transport.state == TransportState.DISCONNECTED
        assert statuses == [True, False]

    @pytest.mark.asyncio
    async def test_listeners_see_every_frame(self):
        """Events and Responses alike reach the listeners."""

        def reply(frame: dict[str, Any]) -> list[dict[str, Any]]:
            return [{"type": "agent_start"}, *echo_ok()(frame)]

        seen: list[str] = []
        async with FakeTransport(reply=reply) as transport:
            unsubscribe = transport.add_listener(lambda frame: seen.append(frame["type"]))
            await transport.request(Command.create("prompt", message="hi"))
            unsubscribe()
            await transport.request(Command.create("abort"))

        assert seen == ["agent_start", "response"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_others(self):
        """A raising listener is logged and the rest still run."""
        seen: list[dict[str, Any]] = []

        def broken(frame: dict[str, Any]) -> None:
            raise RuntimeError("listener bug")

        async with FakeTransport(reply=echo_ok()) as transport:
            transport.add_listener(broken)
            transport.add_listener(seen.append)
            response = await transport.request(Command.create("get_state"))

        assert seen == [response]


class TestWebSocketClientTransport:
    """URL handling for the WebSocket transport."""

    def test_token_added_to_query(self):
        """The token travels as a query parameter."""
        transport = WebSocketClientTransport(ClientTransportConfig(url="ws://host:4096/ws", token="a b"))

        assert transport._connect_url() == "ws://host:4096/ws?token=a+b"

    def test_http_urls_are_mapped(self):
        """http(s) URLs are turned into ws(s) URLs."""
        transport = WebSocketClientTransport(ClientTransportConfig(url="https://host/ws?x=1", token="t"))

        assert transport._connect_url() == "wss://host/ws?x=1&token=t"

    def test_no_token(self):
        transport = WebSocketClientTransport(ClientTransportConfig(url="http://host/ws"))

        assert transport._connect_url() == "ws://host/ws"


class TestRuntimeConfigMapping:
    """Client settings derived from the server configuration."""

    def test_config_from_runtime_config(self):
        """The server's port, token and request timeout carry over."""
        runtime = RuntimeConfig(host="127.0.0.1", port=8080, token="s3cret", request_timeout=4.5)

        config = ClientTransportConfig.from_runtime_config(runtime)

        assert config.url == "ws://127.0.0.1:8080/ws"
        assert config.token == "s3cret"
        assert config.timeout == 4.5

    def test_config_from_wildcard_host(self):
        """Bind-all hosts are dialled through localhost; IPv6 is bracketed."""
        wildcard = ClientTransportConfig.from_runtime_config(RuntimeConfig(host="0.0.0.0"))
        ipv6 = ClientTransportConfig.from_runtime_config(RuntimeConfig(host="::1"))

        assert wildcard.url == "ws://localhost:4096/ws"
        assert ipv6.url == "ws://[::1]:4096/ws"

    @pytest.mark.asyncio
    async def test_request_timeout_from_runtime_config(self):
        """A request times out after the configured request timeout."""
        transport = FakeTransport()
        transport.config = ClientTransportConfig.from_runtime_config(RuntimeConfig(request_timeout=0.01))

        async with transport:
            with pytest.raises(RequestTimeoutError):
                await transport.request(Command.create("get_state"))


# =============================================================================
# ProtocolClient
# =============================================================================


class TestProtocolClient:
    """Typed helpers and failure mapping."""

    @pytest.mark.asyncio
    async def test_failed_response_raises(self):
        """success=false becomes RuntimeError with the server's message."""

        def reply(frame: dict[str, Any]) -> list[dict[str, Any]]:
            return [
                {
                    "type": "response",
                    "id": frame["id"],
                    "command": frame["type"],
                    "success": False,
                    "error": "No model selected",
                }
            ]

        async with FakeTransport(reply=reply) as transport:
            client = ProtocolClient(transport)
            with pytest.raises(RuntimeError, match="No model selected"):
                await client.prompt("hello")

    @pytest.mark.asyncio
    async def test_prompt_parameters(self):
        """Optional parameters are left off the wire when unset."""
        async with FakeTransport(reply=echo_ok()) as transport:
            client = ProtocolClient(transport)
            await client.prompt("hello")
            await client.prompt("steer", streaming_behavior="steer")

        assert transport.sent[0] == {"type": "prompt", "id": "req_1", "message": "hello"}
        assert transport.sent[1]["streamingBehavior"] == "steer"

    @pytest.mark.asyncio
    async def test_prompt_with_command_id(self):
        """A caller-chosen id is sent as the command id."""
        async with FakeTransport(reply=echo_ok()) as transport:
            await ProtocolClient(transport).prompt("steer", streaming_behavior="steer", command_id="prompt_abc")

        assert transport.sent[0]["id"] == "prompt_abc"

    @pytest.mark.asyncio
    async def test_model_and_resource_helpers(self):
        """Model selection and export helpers map their parameters."""
        async with FakeTransport(reply=echo_ok({"path": "/tmp/s.html"})) as transport:
            client = ProtocolClient(transport)
            await client.set_model("test", "model-2")
            path = await client.export_html("/tmp/s.html")

        assert transport.sent[0] == {"type": "set_model", "id": "req_1", "provider": "test", "modelId": "model-2"}
        assert transport.sent[1]["outputPath"] == "/tmp/s.html"
        assert path == "/tmp/s.html"

    @pytest.mark.asyncio
    async def test_list_sessions(self):
        """The sessions list is unwrapped from data."""
        sessions = [{"id": "a", "path": "/s/a.jsonl"}]
        async with FakeTransport(reply=echo_ok({"sessions": sessions})) as transport:
            result = await ProtocolClient(transport).list_sessions(scope="all")

        assert result == sessions
        assert transport.sent[0]["scope"] == "all"

    @pytest.mark.asyncio
    async def test_switch_session_cancelled(self):
        """A cancelled switch returns False."""
        async with FakeTransport(reply=echo_ok({"cancelled": True})) as transport:
            switched = await ProtocolClient(transport).switch_session("/s/b.jsonl")

        assert switched is False
        assert transport.sent[0]["sessionPath"] == "/s/b.jsonl"

    @pytest.mark.asyncio
    async def test_missing_data_defaults(self):
        """Helpers return empty values when a Response has no data."""
        async with FakeTransport(reply=echo_ok()) as transport:
            client = ProtocolClient(transport)

            assert await client.get_messages() == []
            assert await client.get_state() == {}
            assert await client.get_context_usage() is None
            assert await client.clear_queue() == {}
            assert await client.new_session() is True

    @pytest.mark.asyncio
    async def test_extension_ui_response_is_fire_and_forget(self):
        """Dialog answers are sent without waiting for a Response."""
        async with FakeTransport() as transport:
            await ProtocolClient(transport).send_extension_ui_response("ui-1", confirmed=True)

        assert transport.sent == [{"type": "extension_ui_response", "id": "ui-1", "confirmed": True}]
