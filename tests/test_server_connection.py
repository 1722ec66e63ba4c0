"""Tests for ServerConnection."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import anyio
import pytest
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData, ImageContent, LoggingMessageNotificationParams

from switchboard_mcp.config import ClientCapabilitySettings, RequestTimeoutSettings, ServerSettings
from switchboard_mcp.errors import (
    NotConnectedError,
    RemoteToolError,
    RequestError,
    RequestTimeoutError,
    ServerConnectionError,
)
from switchboard_mcp.agents.messages import render_tool_result
from switchboard_mcp.mcp.server_connection import ConnectionState, ServerConnection

from conftest import text_result


@asynccontextmanager
async def open_connection(fake_server, config, timeouts, **kwargs):
    """Run a ServerConnection inside its own task group and always disconnect it."""
    async with anyio.create_task_group() as tg:
        connection = ServerConnection(
            "test",
            config,
            timeouts,
            task_group=tg,
            transport_context_factory=fake_server.transport,
            client_session_factory=fake_server.session_factory,
            **kwargs,
        )
        try:
            yield connection
        finally:
            await connection.disconnect()


def slow_steps(steps: int, delay: float):
    """Tool handler that reports progress after each step."""

    async def handler(arguments, progress_callback):
        for step in range(steps):
            await anyio.sleep(delay)
            if progress_callback:
                await progress_callback(step + 1, steps, None)
        return text_result("done")

    return handler


class TestConnect:
    async def test_connect_moves_to_connected(self, fake_server, server_config, fast_timeouts):
        states = []
        async with open_connection(
            fake_server, server_config, fast_timeouts, on_state_change=lambda name, state: states.append(state)
        ) as connection:
            result = await connection.connect()

            assert result.ok
            assert connection.state is ConnectionState.CONNECTED
            assert connection.server_capabilities.tools is not None
            assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]

    async def test_connect_when_connected_is_a_no_op(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()
            result = await connection.connect()

            assert result.ok
            assert fake_server.sessions_opened == 1

    async def test_unreachable_server_moves_to_error(self, fake_server, fast_timeouts):
        errors = []
        config = ServerSettings(url="http://unreachable.invalid/mcp")
        async with open_connection(
            fake_server, config, fast_timeouts, on_error=lambda name, error: errors.append(error)
        ) as connection:
            result = await connection.connect()

            assert not result.ok
            assert isinstance(result.error, ServerConnectionError)
            assert connection.state is ConnectionState.ERROR
            assert connection.last_error is result.error
            assert errors == [result.error]

    async def test_handshake_is_bounded_by_request_timeout(self, fake_server, server_config, fast_timeouts):
        fake_server.initialize_delay = 1.0
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            with anyio.fail_after(0.9):
                result = await connection.connect()

            assert not result.ok
            assert connection.state is ConnectionState.ERROR

    async def test_connect_after_error_is_a_fresh_attempt(self, fake_server, server_config, fast_timeouts):
        fake_server.initialize_failures = 1
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            assert not (await connection.connect()).ok

            result = await connection.connect()

            assert result.ok
            assert connection.state is ConnectionState.CONNECTED
            assert connection.last_error is None

    async def test_connect_without_task_group_raises(self, fake_server, server_config, fast_timeouts):
        connection = ServerConnection("test", server_config, fast_timeouts)

        with pytest.raises(RuntimeError):
            await connection.connect()

    async def test_capabilities_are_advertised(self, fake_server, fast_timeouts):
        config = ServerSettings(
            url="http://localhost:8000/mcp",
            capabilities=ClientCapabilitySettings(sampling=True, roots=True),
        )
        async with open_connection(fake_server, config, fast_timeouts) as connection:
            await connection.connect()

            kwargs = connection.session.kwargs
            assert kwargs["client_info"].name == "switchboard-mcp"
            assert "sampling_callback" in kwargs
            assert "list_roots_callback" in kwargs

    async def test_server_logs_reach_the_observer(self, fake_server, server_config, fast_timeouts):
        received = []
        async with open_connection(
            fake_server,
            server_config,
            fast_timeouts,
            on_server_log=lambda name, params: received.append((name, params.data)),
        ) as connection:
            await connection.connect()

            connection.session.log_observer(LoggingMessageNotificationParams(level="info", data="hello"))

            assert received == [("test", "hello")]


class TestDisconnect:
    async def test_disconnect_closes_the_session(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            await connection.disconnect()

            assert connection.state is ConnectionState.DISCONNECTED
            assert connection.session is None
            assert connection.server_capabilities is None
            assert fake_server.sessions_closed == 1

    async def test_disconnect_is_idempotent(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.disconnect()
            await connection.connect()
            await connection.disconnect()
            await connection.disconnect()

            assert connection.state is ConnectionState.DISCONNECTED
            assert fake_server.sessions_closed == 1

    async def test_reconnect_after_disconnect(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()
            await connection.disconnect()

            result = await connection.connect()

            assert result.ok
            assert fake_server.sessions_opened == 2

    async def test_disconnect_waits_for_in_flight_request(self, fake_server, server_config, fast_timeouts):
        started = anyio.Event()

        async def slow(arguments, progress_callback):
            started.set()
            await anyio.sleep(0.1)
            return text_result("finished")

        fake_server.handlers["slow"] = slow
        results = []
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            async def call():
                results.append(await connection.call_tool("slow", {}))

            async with anyio.create_task_group() as tg:
                tg.start_soon(call)
                await started.wait()
                await connection.disconnect()

            [result] = results
            assert render_tool_result(result.unwrap()) == "finished"
            assert connection.state is ConnectionState.DISCONNECTED
            assert fake_server.sessions_closed == 1

    async def test_failed_close_still_notifies_observer(self, server_config, fast_timeouts):
        states = []
        connection = ServerConnection(
            "test", server_config, fast_timeouts, on_state_change=lambda name, state: states.append(state)
        )
        connection.state = ConnectionState.ERROR
        connection._close_session = AsyncMock(side_effect=RuntimeError("close failed"))

        await connection.disconnect()

        assert connection.state is ConnectionState.DISCONNECTED
        assert connection.session is None
        assert states == [ConnectionState.DISCONNECTED]


class TestRequests:
    async def test_request_before_connect_fails(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            result = await connection.list_tools()

            assert isinstance(result.error, NotConnectedError)

    async def test_list_tools(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.list_tools()

            assert [tool.name for tool in result.unwrap()] == ["echo"]

    async def test_call_tool(self, fake_server, server_config, fast_timeouts):
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("echo", {"text": "hi"})

            assert render_tool_result(result.unwrap()) == "hi"
            assert fake_server.calls == [("echo", {"text": "hi"})]

    async def test_tool_error_result_is_a_failure(self, fake_server, server_config, fast_timeouts):
        async def broken(arguments, progress_callback):
            return text_result("disk full", is_error=True)

        fake_server.handlers["broken"] = broken
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("broken", {})

            assert isinstance(result.error, RemoteToolError)
            assert "disk full" in str(result.error)

    async def test_protocol_error_is_a_remote_tool_error(self, fake_server, server_config, fast_timeouts):
        async def rejected(arguments, progress_callback):
            raise McpError(ErrorData(code=-32602, message="Invalid params"))

        fake_server.handlers["rejected"] = rejected
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("rejected", {})

            assert isinstance(result.error, RemoteToolError)
            assert "Invalid params" in str(result.error)

    async def test_transport_failure_is_a_request_error(self, fake_server, server_config, fast_timeouts):
        async def crashing(arguments, progress_callback):
            raise ConnectionResetError("connection reset")

        fake_server.handlers["crashing"] = crashing
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("crashing", {})

            assert type(result.error) is RequestError
            assert connection.state is ConnectionState.CONNECTED


class TestTimeoutPolicy:
    async def test_slow_request_times_out(self, fake_server, server_config, fast_timeouts):
        fake_server.handlers["slow"] = slow_steps(1, 1.0)
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("slow", {})

            assert isinstance(result.error, RequestTimeoutError)
            assert result.error.elapsed < 0.9

    async def test_progress_resets_the_timeout(self, fake_server, server_config, fast_timeouts):
        # 8 x 0.05s = 0.4s in total, well past the 0.15s window
        fake_server.handlers["steps"] = slow_steps(8, 0.05)
        async with open_connection(fake_server, server_config, fast_timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("steps", {})

            assert result.ok

    async def test_progress_ignored_when_reset_disabled(self, fake_server, server_config):
        timeouts = RequestTimeoutSettings(
            request_timeout_seconds=0.15,
            reset_timeout_on_progress=False,
            max_total_timeout_seconds=2.0,
        )
        fake_server.handlers["steps"] = slow_steps(8, 0.05)
        async with open_connection(fake_server, server_config, timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("steps", {})

            assert isinstance(result.error, RequestTimeoutError)

    async def test_max_total_timeout_caps_progress_resets(self, fake_server, server_config):
        timeouts = RequestTimeoutSettings(
            request_timeout_seconds=0.15,
            reset_timeout_on_progress=True,
            max_total_timeout_seconds=0.2,
        )
        fake_server.handlers["steps"] = slow_steps(8, 0.05)
        async with open_connection(fake_server, server_config, timeouts) as connection:
            await connection.connect()

            result = await connection.call_tool("steps", {})

            assert isinstance(result.error, RequestTimeoutError)
            assert result.error.elapsed < 0.35

    async def test_server_timeout_override_wins(self, fake_server, fast_timeouts):
        override = RequestTimeoutSettings(request_timeout_seconds=5.0, max_total_timeout_seconds=10.0)
        config = ServerSettings(url="http://localhost:8000/mcp", timeouts=override)
        connection = ServerConnection("test", config, fast_timeouts)

        connection.apply_config(timeouts=RequestTimeoutSettings(request_timeout_seconds=1.0))

        assert connection.timeouts == override

    async def test_apply_config_replaces_the_policy(self, server_config, fast_timeouts):
        connection = ServerConnection("test", server_config, fast_timeouts)
        updated = RequestTimeoutSettings(request_timeout_seconds=1.0, max_total_timeout_seconds=3.0)

        connection.apply_config(timeouts=updated)

        assert connection.timeouts == updated


class TestRenderToolResult:
    def test_text_blocks_are_joined(self):
        result = text_result("one")
        result.content.append(text_result("two").content[0])

        assert render_tool_result(result) == "one\ntwo"

    def test_non_text_blocks_are_described(self):
        result = text_result("chart:")
        result.content.append(ImageContent(type="image", data="aGk=", mimeType="image/png"))

        assert render_tool_result(result) == "chart:\n[Non-text content: ImageContent]"
