"""
Manages the lifecycle of a single MCP server connection.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from enum import Enum
from typing import (
    Any,
    AsyncContextManager,
    AsyncGenerator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

import anyio
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from mcp.types import (
    CallToolResult,
    ErrorData,
    Implementation,
    ListRootsResult,
    LoggingMessageNotificationParams,
    ServerCapabilities,
    Tool,
)

from switchboard_mcp import __version__
from switchboard_mcp.agents.completion import CompletionProvider, create_completion_provider
from switchboard_mcp.agents.messages import render_tool_result
from switchboard_mcp.agents.tool_loop import ToolLoop, UpdateCallback
from switchboard_mcp.config import CompletionSettings, RequestTimeoutSettings, ServerSettings
from switchboard_mcp.errors import (
    NotConnectedError,
    RemoteToolError,
    RequestError,
    RequestTimeoutError,
    Result,
    ServerConnectionError,
    SwitchboardError,
)
from switchboard_mcp.mcp.client_session import SwitchboardClientSession
from switchboard_mcp.utils.logging import get_logger

logger = get_logger(__name__)

# How long disconnect() waits for the session task to wind down
CLOSE_TIMEOUT_SECONDS = 5.0

TransportContextFactory = Callable[
    [ServerSettings],
    AsyncContextManager[Tuple[MemoryObjectReceiveStream, MemoryObjectSendStream]],
]
ClientSessionFactory = Callable[..., ClientSession]
ProviderFactory = Callable[[CompletionSettings], CompletionProvider]
ServerLogObserver = Callable[[str, LoggingMessageNotificationParams], None]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@asynccontextmanager
async def open_transport(
    config: ServerSettings,
) -> AsyncGenerator[Tuple[MemoryObjectReceiveStream, MemoryObjectSendStream], None]:
    """
    Open the transport streams described by ``config``.
    """
    headers = config.request_headers()
    if config.transport == "sse":
        async with sse_client(
            config.url,
            headers=headers,
            sse_read_timeout=config.sse_read_timeout_seconds,
        ) as (read_stream, write_stream):
            yield read_stream, write_stream
    elif config.transport == "streamable-http":
        async with streamablehttp_client(
            config.url,
            headers=headers,
            sse_read_timeout=timedelta(seconds=config.sse_read_timeout_seconds),
        ) as (read_stream, write_stream, _get_session_id):
            yield read_stream, write_stream
    else:
        raise ValueError(f"Unsupported transport: {config.transport}")


async def _decline_sampling(context, params) -> ErrorData:
    return ErrorData(
        code=-32603,
        message="No upstream LLM provider available for handling this request",
    )


async def _no_roots(context) -> ListRootsResult:
    return ListRootsResult(roots=[])


class ServerConnection:
    """
    A long-lived connection to one MCP server.

    The session and its transport are owned by a lifecycle task started in
    the supplied task group; ``connect`` waits for the handshake and
    ``disconnect`` signals the task to close everything. State transitions
    and outbound requests are serialized by a per-connection lock, so a
    request never runs against a session that is being torn down.

    Failures are returned as ``Result`` values rather than raised.
    """

    def __init__(
        self,
        server_name: str,
        server_config: ServerSettings,
        timeouts: RequestTimeoutSettings,
        *,
        task_group: Optional[TaskGroup] = None,
        completion: Optional[CompletionSettings] = None,
        transport_context_factory: TransportContextFactory = open_transport,
        client_session_factory: ClientSessionFactory = SwitchboardClientSession,
        provider_factory: ProviderFactory = create_completion_provider,
        on_server_log: Optional[ServerLogObserver] = None,
        on_state_change: Optional[Callable[[str, ConnectionState], None]] = None,
        on_error: Optional[Callable[[str, SwitchboardError], None]] = None,
    ):
        self.server_name = server_name
        self.server_config = server_config
        self.timeouts = server_config.timeouts or timeouts
        self.completion = completion or CompletionSettings()
        self.state = ConnectionState.DISCONNECTED
        self.server_capabilities: Optional[ServerCapabilities] = None
        self.last_error: Optional[SwitchboardError] = None
        self.session: Optional[ClientSession] = None

        self._task_group = task_group
        self._transport_context_factory = transport_context_factory
        self._client_session_factory = client_session_factory
        self._provider_factory = provider_factory
        self._on_server_log = on_server_log
        self._on_state_change = on_state_change
        self._on_error = on_error

        self._lock = anyio.Lock()
        self._session_failure: Optional[BaseException] = None
        # Signal that the session is up, or that the attempt is over
        self._initialized_event: Optional[anyio.Event] = None
        # Signal we want to shut down
        self._shutdown_event: Optional[anyio.Event] = None
        # Signal the lifecycle task has released the transport
        self._closed_event: Optional[anyio.Event] = None

    def __repr__(self) -> str:
        return f"ServerConnection({self.server_name!r}, state={self.state.value})"

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        logger.info(f"{self.server_name}: {self.state.value} -> {state.value}")
        self.state = state
        if self._on_state_change:
            try:
                self._on_state_change(self.server_name, state)
            except Exception as e:
                logger.error(f"{self.server_name}: Error in state observer: {e}")

    def _report_error(self, error: SwitchboardError) -> None:
        if self._on_error:
            try:
                self._on_error(self.server_name, error)
            except Exception as e:
                logger.error(f"{self.server_name}: Error in error observer: {e}")

    def apply_config(
        self,
        timeouts: Optional[RequestTimeoutSettings] = None,
        completion: Optional[CompletionSettings] = None,
    ) -> None:
        """
        Replace the effective timeout policy and/or completion settings.

        A timeout override in this server's own settings takes precedence.
        """
        if timeouts is not None and self.server_config.timeouts is None:
            logger.debug(f"{self.server_name}: Timeout policy updated", data=timeouts.model_dump())
            self.timeouts = timeouts
        if completion is not None:
            logger.debug(f"{self.server_name}: Completion settings updated")
            self.completion = completion

    def _create_session(
        self,
        read_stream: MemoryObjectReceiveStream,
        send_stream: MemoryObjectSendStream,
    ) -> ClientSession:
        callbacks: Dict[str, Any] = {
            "client_info": Implementation(name="switchboard-mcp", version=__version__),
        }
        capabilities = self.server_config.capabilities
        if capabilities and capabilities.sampling:
            callbacks["sampling_callback"] = _decline_sampling
        if capabilities and capabilities.roots:
            callbacks["list_roots_callback"] = _no_roots

        session = self._client_session_factory(read_stream, send_stream, None, **callbacks)

        if self.server_config.enable_server_logs and self._on_server_log and hasattr(session, "log_observer"):
            session.log_observer = self._forward_server_log

        return session

    def _forward_server_log(self, params: LoggingMessageNotificationParams) -> None:
        logger.debug(f"{self.server_name}: server log [{params.level}]", data=params.data)
        if self._on_server_log:
            self._on_server_log(self.server_name, params)

    async def _session_lifecycle(self) -> None:
        """
        Own the transport and session from handshake to shutdown.
        """
        initialized = self._initialized_event
        shutdown = self._shutdown_event
        closed = self._closed_event
        try:
            async with self._transport_context_factory(self.server_config) as (read_stream, write_stream):
                session = self._create_session(read_stream, write_stream)
                async with session:
                    with anyio.fail_after(self.timeouts.request_timeout_seconds):
                        init_result = await session.initialize()

                    self.server_capabilities = init_result.capabilities
                    self.session = session
                    initialized.set()

                    await shutdown.wait()
        except Exception as exc:
            self._session_failure = exc
            logger.error(f"{self.server_name}: Session lifecycle error: {exc!r}")
        finally:
            self.session = None
            initialized.set()
            closed.set()
            if not shutdown.is_set() and self.state is ConnectionState.CONNECTED:
                error = ServerConnectionError(self.server_name, "session closed unexpectedly")
                error.__cause__ = self._session_failure
                self.last_error = error
                self._set_state(ConnectionState.ERROR)
                self._report_error(error)

    async def _close_session(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        if self._closed_event is not None:
            with anyio.move_on_after(CLOSE_TIMEOUT_SECONDS):
                await self._closed_event.wait()
            if not self._closed_event.is_set():
                logger.warning(f"{self.server_name}: Session did not close within {CLOSE_TIMEOUT_SECONDS}s")
        self.session = None
        self.server_capabilities = None

    async def connect(self) -> Result[None]:
        """
        Perform the handshake with the server.

        A no-op when already connected; after an error it is a fresh attempt.
        """
        async with self._lock:
            if self.state is ConnectionState.CONNECTED:
                return Result.success()

            if self._task_group is None:
                raise RuntimeError(
                    "ServerConnection needs a task group to run its session "
                    "(use it through ServerRegistry or pass task_group)."
                )

            # Release whatever an earlier failed attempt left behind
            await self._close_session()

            self.last_error = None
            self._session_failure = None
            self._initialized_event = anyio.Event()
            self._shutdown_event = anyio.Event()
            self._closed_event = anyio.Event()
            self._set_state(ConnectionState.CONNECTING)

            logger.info(
                f"{self.server_name}: Connecting",
                data={"transport": self.server_config.transport, "url": self.server_config.url},
            )
            self._task_group.start_soon(self._session_lifecycle)
            await self._initialized_event.wait()

            if self.session is None:
                failure = self._session_failure
                error = ServerConnectionError(
                    self.server_name, f"handshake failed: {failure!r}" if failure else "handshake failed"
                )
                error.__cause__ = failure
                self.last_error = error
                self._set_state(ConnectionState.ERROR)
                self._report_error(error)
                return Result.failure(error)

            self._set_state(ConnectionState.CONNECTED)
            return Result.success()

    async def disconnect(self) -> None:
        """
        Close the session if one is open. Safe to call repeatedly; never raises.
        """
        try:
            async with self._lock:
                await self._close_session()
                self._set_state(ConnectionState.DISCONNECTED)
        except Exception as e:
            logger.error(f"{self.server_name}: Error while disconnecting: {e}")
            self.session = None
            self._set_state(ConnectionState.DISCONNECTED)

    async def _request(
        self,
        method: str,
        send: Callable[[ClientSession, Callable[..., Awaitable[None]]], Awaitable[Any]],
    ) -> Result[Any]:
        """
        Send one request under the effective timeout policy.
        """
        async with self._lock:
            session = self.session
            if self.state is not ConnectionState.CONNECTED or session is None:
                return Result.failure(NotConnectedError(self.server_name, method))

            policy = self.timeouts
            started = anyio.current_time()
            hard_deadline = started + policy.max_total_timeout_seconds
            scope = anyio.CancelScope(
                deadline=min(started + policy.request_timeout_seconds, hard_deadline)
            )

            async def on_progress(progress: float, total: Optional[float] = None, message: Optional[str] = None) -> None:
                logger.debug(f"{self.server_name}: {method} progress {progress}/{total}")
                if policy.reset_timeout_on_progress:
                    scope.deadline = min(anyio.current_time() + policy.request_timeout_seconds, hard_deadline)

            error: Optional[RequestError] = None
            with scope:
                try:
                    return Result.success(await send(session, on_progress))
                except McpError as e:
                    error = RemoteToolError(self.server_name, method, e.error.message)
                except Exception as e:
                    error = RequestError(self.server_name, method, str(e) or type(e).__name__)

            if error is None:
                error = RequestTimeoutError(self.server_name, method, anyio.current_time() - started)

            logger.error(str(error))
            self._report_error(error)
            return Result.failure(error)

    async def list_tools(self) -> Result[List[Tool]]:
        """
        List the tools offered by the server.
        """
        async def send(session: ClientSession, on_progress) -> List[Tool]:
            result = await session.list_tools()
            return list(result.tools or [])

        return await self._request("tools/list", send)

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Result[CallToolResult]:
        """
        Invoke a tool. A result flagged as an error by the server is
        returned as a ``RemoteToolError``.
        """
        logger.info(f"{self.server_name}: Calling tool {name}", data=arguments)

        async def send(session: ClientSession, on_progress) -> CallToolResult:
            return await session.call_tool(name=name, arguments=arguments, progress_callback=on_progress)

        result = await self._request("tools/call", send)
        if result.ok and result.value.isError:
            error = RemoteToolError(self.server_name, "tools/call", render_tool_result(result.value) or "tool reported an error")
            self._report_error(error)
            return Result.failure(error)
        return result

    async def process_query(
        self,
        query: str,
        tools: List[Tool],
        on_update: Optional[UpdateCallback] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Answer ``query`` with the completion service, letting it call this
        server's tools.

        Raises:
            CompletionServiceError: If no completion API key is configured.
        """
        settings = self.completion
        provider = self._provider_factory(settings)
        loop = ToolLoop(
            connection=self,
            provider=provider,
            model=model or settings.model,
            max_tokens=settings.max_tokens,
            max_iterations=settings.max_iterations,
            system_prompt=settings.system_prompt,
        )
        return await loop.run(query, tools, on_update)
