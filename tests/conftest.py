"""Shared pytest fixtures."""

from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

import anyio
import pytest
from mcp.types import (
    CallToolResult,
    Implementation,
    InitializeResult,
    ListToolsResult,
    ServerCapabilities,
    TextContent,
    Tool,
    ToolsCapability,
)

from switchboard_mcp.agents.completion import CompletionProvider
from switchboard_mcp.agents.messages import CompletionResponse, TextBlock, ToolUseBlock
from switchboard_mcp.config import CompletionSettings, RequestTimeoutSettings, ServerSettings

ToolHandler = Callable[[Optional[Dict[str, Any]], Any], Awaitable[CallToolResult]]


def text_result(text: str, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


def make_tool(name: str, properties: Optional[Dict[str, Any]] = None, required: Optional[List[str]] = None) -> Tool:
    schema: Dict[str, Any] = {"type": "object", "properties": properties or {}}
    if required:
        schema["required"] = required
    return Tool(name=name, description=f"The {name} tool", inputSchema=schema)


class FakeSession:
    """Stands in for an MCP ClientSession; behaviour comes from its FakeServer."""

    def __init__(self, server: "FakeServer", read_stream, write_stream, read_timeout=None, **kwargs):
        self.server = server
        self.kwargs = kwargs
        self.log_observer = None

    async def __aenter__(self):
        self.server.sessions_opened += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.server.sessions_closed += 1
        return None

    async def initialize(self) -> InitializeResult:
        if self.server.initialize_delay:
            await anyio.sleep(self.server.initialize_delay)
        if self.server.initialize_failures > 0:
            self.server.initialize_failures -= 1
            raise RuntimeError("handshake rejected")
        return InitializeResult(
            protocolVersion="2025-03-26",
            capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
            serverInfo=Implementation(name="fake-server", version="1.0.0"),
        )

    async def list_tools(self) -> ListToolsResult:
        return ListToolsResult(tools=list(self.server.tools))

    async def call_tool(self, name: str, arguments=None, progress_callback=None, **kwargs) -> CallToolResult:
        self.server.calls.append((name, arguments))
        handler = self.server.handlers.get(name)
        if handler is None:
            return text_result(f"Unknown tool: {name}", is_error=True)
        return await handler(arguments, progress_callback)


class FakeServer:
    """
    In-process MCP server double. Use ``transport`` and ``session_factory``
    as the connection factories; URLs containing "unreachable" fail to open.
    """

    def __init__(self):
        self.tools: List[Tool] = [make_tool("echo", {"text": {"type": "string"}}, ["text"])]
        self.handlers: Dict[str, ToolHandler] = {"echo": self._echo}
        self.calls: List[tuple] = []
        self.sessions_opened = 0
        self.sessions_closed = 0
        self.transports_opened: List[str] = []
        self.initialize_delay = 0.0
        self.initialize_failures = 0

    @staticmethod
    async def _echo(arguments, progress_callback) -> CallToolResult:
        return text_result(str((arguments or {}).get("text", "")))

    @asynccontextmanager
    async def transport(self, config: ServerSettings):
        if "unreachable" in config.url:
            raise ConnectionError(f"cannot reach {config.url}")
        self.transports_opened.append(config.url)
        yield None, None

    def session_factory(self, read_stream, write_stream, read_timeout=None, **kwargs) -> FakeSession:
        return FakeSession(self, read_stream, write_stream, read_timeout, **kwargs)


class ScriptedProvider(CompletionProvider):
    """Completion provider returning canned responses in order."""

    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, model, transcript, tools, max_tokens, system=None) -> CompletionResponse:
        self.calls.append(
            {
                "model": model,
                "transcript": list(transcript),
                "tools": tools,
                "max_tokens": max_tokens,
                "system": system,
            }
        )
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def text_response(text: str) -> CompletionResponse:
    return CompletionResponse(content=[TextBlock(text=text)], stop_reason="end_turn")


def tool_response(name: str, arguments: Any, tool_use_id: str = "toolu_1", text: Optional[str] = None) -> CompletionResponse:
    content: List[Any] = []
    if text:
        content.append(TextBlock(text=text))
    content.append(ToolUseBlock(id=tool_use_id, name=name, input=arguments))
    return CompletionResponse(content=content, stop_reason="tool_use")


@pytest.fixture(autouse=True)
def no_api_key_env(monkeypatch):
    """Keep real credentials out of the tests."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "")
    monkeypatch.setattr("switchboard_mcp.utils.secrets._dotenv_loaded", True)


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def server_config():
    return ServerSettings(url="http://localhost:8000/mcp")


@pytest.fixture
def fast_timeouts():
    return RequestTimeoutSettings(
        request_timeout_seconds=0.15,
        reset_timeout_on_progress=True,
        max_total_timeout_seconds=2.0,
    )


@pytest.fixture
def completion_settings():
    return CompletionSettings(api_key="test-key", max_iterations=5)
