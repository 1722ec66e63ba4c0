"""
Server registry: named server configurations and their live connections.
"""

from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import anyio
from anyio import create_task_group
from anyio.abc import TaskGroup
from mcp.types import ServerCapabilities, Tool
from pydantic import BaseModel, ConfigDict, Field

from switchboard_mcp.agents.completion import create_completion_provider
from switchboard_mcp.agents.tool_loop import UpdateCallback
from switchboard_mcp.config import (
    CompletionSettings,
    RequestTimeoutSettings,
    ServerSettings,
    Settings,
    default_timeouts,
)
from switchboard_mcp.errors import (
    NoConnectedServersError,
    Result,
    ServerNotFoundError,
    SwitchboardError,
)
from switchboard_mcp.mcp.client_session import SwitchboardClientSession
from switchboard_mcp.mcp.server_connection import (
    ClientSessionFactory,
    ConnectionState,
    ProviderFactory,
    ServerConnection,
    ServerLogObserver,
    TransportContextFactory,
    open_transport,
)
from switchboard_mcp.utils.logging import get_logger

logger = get_logger(__name__)


class ServerConnectionInfo(BaseModel):
    """Read-only view of one configured server."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    config: ServerSettings
    state: ConnectionState = ConnectionState.DISCONNECTED
    capabilities: Optional[ServerCapabilities] = None
    connection: Optional[ServerConnection] = Field(default=None, exclude=True)


class ServerTools(BaseModel):
    server_name: str
    tools: List[Tool] = Field(default_factory=list)


class ServerRegistry:
    """
    Owns the server configurations and at most one live connection per
    server name.

    Must be entered as an async context manager: connection lifecycle tasks
    run in the registry's task group, and leaving the context disconnects
    every server.

    Example:
        async with ServerRegistry.from_settings(settings) as registry:
            await registry.connect_all()
            answer = await registry.process_query("What's the weather?")
    """

    def __init__(
        self,
        servers: Optional[Dict[str, ServerSettings]] = None,
        timeouts: Optional[RequestTimeoutSettings] = None,
        completion: Optional[CompletionSettings] = None,
        *,
        transport_context_factory: TransportContextFactory = open_transport,
        client_session_factory: ClientSessionFactory = SwitchboardClientSession,
        provider_factory: ProviderFactory = create_completion_provider,
        on_server_log: Optional[ServerLogObserver] = None,
        on_state_change: Optional[Callable[[str, ConnectionState], None]] = None,
        on_error: Optional[Callable[[str, SwitchboardError], None]] = None,
    ):
        self._servers: Dict[str, ServerSettings] = dict(servers or {})
        self._clients: Dict[str, ServerConnection] = {}
        self._timeouts = timeouts or default_timeouts()
        self._completion = completion or CompletionSettings()

        self._transport_context_factory = transport_context_factory
        self._client_session_factory = client_session_factory
        self._provider_factory = provider_factory
        self._on_server_log = on_server_log
        self._on_state_change = on_state_change
        self._on_error = on_error

        # One lock per server name; different servers never wait on each other
        self._name_locks: Dict[str, anyio.Lock] = defaultdict(anyio.Lock)
        self._tg: Optional[TaskGroup] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "ServerRegistry":
        """
        Build a registry from loaded settings.
        """
        return cls(
            servers=settings.mcp.servers,
            timeouts=settings.timeouts,
            completion=settings.completion,
            **kwargs,
        )

    async def __aenter__(self) -> "ServerRegistry":
        self._tg = create_task_group()
        await self._tg.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        logger.debug("ServerRegistry: shutting down all server connections...")
        tg = self._tg
        try:
            await self.disconnect_all()
        finally:
            self._tg = None
            if tg is not None:
                # Anything still running belongs to a connection that failed to close
                tg.cancel_scope.cancel()
                await tg.__aexit__(exc_type, exc_val, exc_tb)
        logger.debug("ServerRegistry: shutdown complete")

    def _build_connection(self, name: str, config: ServerSettings) -> ServerConnection:
        if self._tg is None:
            raise RuntimeError(
                "ServerRegistry must be used inside an async context (i.e. 'async with' or after __aenter__)."
            )
        return ServerConnection(
            server_name=name,
            server_config=config,
            timeouts=self._timeouts,
            task_group=self._tg,
            completion=self._completion,
            transport_context_factory=self._transport_context_factory,
            client_session_factory=self._client_session_factory,
            provider_factory=self._provider_factory,
            on_server_log=self._on_server_log,
            on_state_change=self._on_state_change,
            on_error=self._on_error,
        )

    def upsert_server(self, name: str, config: ServerSettings) -> None:
        """
        Add or replace a server configuration. Does not connect.

        A live connection keeps its old configuration until it is rebuilt.
        """
        logger.info(f"{name}: Configuration {'replaced' if name in self._servers else 'added'}")
        self._servers[name] = config

    async def remove_server(self, name: str) -> None:
        """
        Disconnect and discard any connection for ``name``, then delete its
        configuration.
        """
        async with self._name_locks[name]:
            connection = self._clients.pop(name, None)
            if connection is not None:
                await connection.disconnect()
            if self._servers.pop(name, None) is None:
                logger.debug(f"{name}: Not configured, nothing to remove")
            else:
                logger.info(f"{name}: Removed")
        self._name_locks.pop(name, None)

    async def ensure_connected(self, name: str) -> Result[ServerConnection]:
        """
        Return a connected client for ``name``, connecting only when needed.

        A connected client is returned as is. An explicitly disconnected
        client is reconnected in place. Otherwise (no client yet, the client
        is in error, or the in-place reconnect failed) a fresh connection
        replaces it.
        """
        if name not in self._servers:
            return Result.failure(ServerNotFoundError(name))

        async with self._name_locks[name]:
            config = self._servers.get(name)
            if config is None:
                return Result.failure(ServerNotFoundError(name))

            existing = self._clients.get(name)
            if existing is not None:
                if existing.state is ConnectionState.CONNECTED:
                    return Result.success(existing)
                if existing.state is ConnectionState.DISCONNECTED:
                    logger.debug(f"{name}: Reconnecting existing client")
                    result = await existing.connect()
                    if result.ok:
                        return Result.success(existing)
                    logger.warning(f"{name}: Reconnect failed, creating a new client: {result.error}")
                else:
                    logger.debug(f"{name}: Replacing client in state {existing.state.value}")
                await existing.disconnect()

            connection = self._build_connection(name, config)
            # Registered even on failure so snapshot() reports the error
            self._clients[name] = connection
            result = await connection.connect()
            return Result.success(connection) if result.ok else Result.failure(result.error)

    async def connect_all(self) -> None:
        """
        Connect every configured server concurrently. Individual failures
        are logged and reported to the error observer; they never abort
        the other connections.
        """
        names = list(self._servers)
        logger.info(f"Connecting {len(names)} servers")

        async def _connect(name: str) -> None:
            try:
                result = await self.ensure_connected(name)
            except Exception as e:
                logger.error(f"{name}: Unexpected error while connecting: {e}", exc_info=True)
                return
            if not result.ok:
                logger.warning(f"{name}: Could not connect: {result.error}")

        async with create_task_group() as tg:
            for name in names:
                tg.start_soon(_connect, name)

        connected = sum(1 for c in self._clients.values() if c.state is ConnectionState.CONNECTED)
        logger.info(f"Connected {connected}/{len(names)} servers")

    async def disconnect_server(self, name: str) -> None:
        """
        Disconnect ``name`` but keep its client, so the next
        ``ensure_connected`` reconnects the same instance.
        """
        connection = self._clients.get(name)
        if connection is None:
            logger.debug(f"{name}: No live client to disconnect")
            return
        async with self._name_locks[name]:
            await connection.disconnect()

    async def disconnect_all(self) -> None:
        """
        Disconnect every live client concurrently.
        """
        connections = list(self._clients.values())
        if not connections:
            return

        async def _disconnect(connection: ServerConnection) -> None:
            try:
                await connection.disconnect()
            except Exception as e:
                logger.error(f"{connection.server_name}: Error while disconnecting: {e}")

        async with create_task_group() as tg:
            for connection in connections:
                tg.start_soon(_disconnect, connection)

    def snapshot(self) -> List[ServerConnectionInfo]:
        """
        Describe every configured server, connected or not.
        """
        infos = []
        for name, config in self._servers.items():
            connection = self._clients.get(name)
            if connection is None:
                infos.append(ServerConnectionInfo(name=name, config=config))
            else:
                infos.append(
                    ServerConnectionInfo(
                        name=name,
                        config=config,
                        state=connection.state,
                        capabilities=connection.server_capabilities,
                        connection=connection,
                    )
                )
        return infos

    def get_client(self, name: str) -> Optional[ServerConnection]:
        return self._clients.get(name)

    def clients(self) -> Dict[str, ServerConnection]:
        return dict(self._clients)

    def server_names(self) -> List[str]:
        return list(self._servers)

    def get_config(self) -> RequestTimeoutSettings:
        return self._timeouts

    @property
    def completion(self) -> CompletionSettings:
        return self._completion

    def update_timeouts(self, **changes: Any) -> RequestTimeoutSettings:
        """
        Change the timeout policy and apply it to every live client.

        Raises:
            pydantic.ValidationError: If the resulting policy is invalid.
        """
        timeouts = RequestTimeoutSettings.model_validate({**self._timeouts.model_dump(), **changes})
        self._timeouts = timeouts
        for connection in self._clients.values():
            connection.apply_config(timeouts=timeouts)
        logger.info("Timeout policy updated", data=timeouts.model_dump())
        return timeouts

    def update_completion(self, **changes: Any) -> CompletionSettings:
        """
        Change the completion settings and apply them to every live client.
        """
        completion = self._completion.model_copy(update=changes)
        self._completion = completion
        for connection in self._clients.values():
            connection.apply_config(completion=completion)
        logger.info(f"Completion settings updated: {', '.join(sorted(changes))}")
        return completion

    def set_api_key(self, api_key: str) -> None:
        self.update_completion(api_key=api_key)

    async def get_all_tools(self) -> List[ServerTools]:
        """
        List tools of every configured server, connecting as needed.

        A server that cannot be reached contributes an empty list.
        """
        names = list(self._servers)
        tools_by_server: Dict[str, List[Tool]] = {name: [] for name in names}

        async def _collect(name: str) -> None:
            connected = await self.ensure_connected(name)
            if not connected.ok:
                logger.warning(f"Could not get tools for {name}: {connected.error}")
                return
            listed = await connected.value.list_tools()
            if not listed.ok:
                logger.warning(f"Could not get tools for {name}: {listed.error}")
                return
            tools_by_server[name] = listed.value

        async with create_task_group() as tg:
            for name in names:
                tg.start_soon(_collect, name)

        return [ServerTools(server_name=name, tools=tools_by_server[name]) for name in names]

    async def process_query(
        self,
        query: str,
        tools: Optional[List[Tool]] = None,
        on_update: Optional[UpdateCallback] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Answer ``query`` using the first connected server.

        Args:
            query: The user's question.
            tools: Tools offered to the completion service; defaults to the
                chosen server's tool list.
            on_update: Receives output text as it is produced.
            model: Overrides the configured model.

        Raises:
            NoConnectedServersError: If no server is connected.
        """
        connection = next(
            (
                self._clients[name]
                for name in self._servers
                if name in self._clients and self._clients[name].state is ConnectionState.CONNECTED
            ),
            None,
        )
        if connection is None:
            error = NoConnectedServersError()
            if on_update:
                on_update(f"[Error: {error}]")
            raise error

        try:
            if tools is None:
                tools = (await connection.list_tools()).unwrap()
            return await connection.process_query(query, tools, on_update=on_update, model=model)
        except Exception as e:
            logger.error(f"Error processing query on {connection.server_name}: {e}")
            if on_update:
                on_update(f"[Error processing query on {connection.server_config.url}: {e}]")
            raise
