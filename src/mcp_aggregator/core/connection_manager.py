"""
Connection manager for downstream tool servers.

Keeps at most one live ``Connection`` per server name, rebuilds dead ones
on the next ``acquire`` and makes concurrent acquirers of the same name
share a single connection attempt.
"""

import asyncio
import os
from typing import Any, Dict, List, Optional

from mcp_aggregator.core.client import ProtocolClient
from mcp_aggregator.core.directory import ConfigurationStore, ProcessDirectory
from mcp_aggregator.core.exceptions import (
    ConnectError, DirectoryError, ServerNotRunning,
)
from mcp_aggregator.core.models import Connection, LaunchParams
from mcp_aggregator.core.transport import StdioTransport, Transport, UnixSocketTransport
from mcp_aggregator.utils.config import AggregatorConfig
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """
    Pool of protocol sessions keyed by server name.

    The cache and the in-flight table are written only from the event
    loop, so no lock is needed around them.
    """

    def __init__(
        self,
        directory: ProcessDirectory,
        configuration_store: ConfigurationStore,
        config: Optional[AggregatorConfig] = None,
    ):
        """
        Initialize connection manager.

        Args:
            directory: Source of server liveness
            configuration_store: Source of launch parameters
            config: Timeouts and identity. If None, uses defaults.
        """
        self.directory = directory
        self.configuration_store = configuration_store
        self.config = config or AggregatorConfig()
        self.pool_name = self.config.pool_name

        self._connections: Dict[str, Connection] = {}
        self._pending: Dict[str, asyncio.Future] = {}

    async def acquire(self, server_name: str) -> Optional[Connection]:
        """
        Get a live connection to ``server_name``, creating one if needed.

        Returns:
            The cached or newly created connection, or None when the
            connection could not be established.

        Raises:
            ServerNotRunning: The process directory reports the server is
                not Online.
        """
        while True:
            existing = self._connections.get(server_name)
            if existing is None:
                break
            if existing.is_alive():
                return existing

            logger.info(f"[{server_name}] Cached connection is dead, reconnecting")
            if self._connections.get(server_name) is existing:
                del self._connections[server_name]
            await existing.close()

        pending = self._pending.get(server_name)
        if pending is None:
            pending = asyncio.ensure_future(self._create(server_name))
            self._pending[server_name] = pending
        else:
            logger.debug(f"[{server_name}] Joining in-flight connection attempt")

        return await asyncio.shield(pending)

    async def _create(self, server_name: str) -> Optional[Connection]:
        try:
            if not await self._check_online(server_name):
                raise ServerNotRunning(
                    f"Server {server_name} is not running",
                    error_code="SERVER_NOT_RUNNING",
                    details={"server": server_name},
                )

            try:
                params = await asyncio.to_thread(self.configuration_store.get_launch_params, server_name)
                connection = await self._connect(server_name, params)
            except Exception as e:
                logger.error(f"[{server_name}] Failed to connect: {e}")
                return None

            self._connections[server_name] = connection
            logger.info(f"[{server_name}] Connected via {connection.transport.label}")
            return connection
        finally:
            self._pending.pop(server_name, None)

    async def _check_online(self, server_name: str) -> bool:
        try:
            server = await asyncio.wait_for(
                self.directory.get_server(server_name), timeout=self.config.directory_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"[{server_name}] Process directory timed out")
            return False
        except DirectoryError as e:
            logger.error(f"[{server_name}] Process directory failed: {e}")
            return False
        return server is not None and server.is_online

    async def _connect(self, server_name: str, params: LaunchParams) -> Connection:
        """Open a transport, preferring the server's local socket when present."""
        if params.socket_path and os.path.exists(params.socket_path):
            try:
                return await self._start_session(server_name, self._unix_transport(params))
            except ConnectError as e:
                logger.warning(f"[{server_name}] Socket {params.socket_path} unusable ({e}), falling back to stdio")
        else:
            logger.debug(f"[{server_name}] No socket at {params.socket_path}, using stdio")

        return await self._start_session(server_name, self._stdio_transport(params))

    async def _start_session(self, server_name: str, transport: Transport) -> Connection:
        client = ProtocolClient(
            transport,
            client_name=self.config.client_name,
            client_version=self.config.client_version,
            request_timeout=self.config.request_timeout,
        )
        try:
            await asyncio.wait_for(client.start(), timeout=self.config.connect_timeout)
        except asyncio.TimeoutError:
            await client.close()
            await transport.close()
            raise ConnectError(
                f"[{server_name}] Handshake timed out after {self.config.connect_timeout}s",
                error_code="HANDSHAKE_TIMEOUT",
            )
        except BaseException:
            await client.close()
            await transport.close()
            raise

        return Connection(server_name=server_name, client=client, transport=transport)

    def _transport_options(self) -> Dict[str, Any]:
        return {
            "connect_timeout": self.config.connect_timeout,
            "close_timeout": self.config.close_timeout,
            "idle_timeout": self.config.idle_timeout,
            "max_write_buffer": self.config.max_write_buffer,
        }

    def _unix_transport(self, params: LaunchParams) -> Transport:
        return UnixSocketTransport(params.socket_path, **self._transport_options())

    def _stdio_transport(self, params: LaunchParams) -> Transport:
        return StdioTransport(
            params.command,
            params.args,
            cwd=params.working_directory if params.working_directory and os.path.isdir(params.working_directory) else None,
            env=params.environment,
            **self._transport_options(),
        )

    async def release(self, server_name: str, expected: Optional[Connection] = None) -> None:
        """
        Close and forget the connection for ``server_name``, if any.

        Args:
            server_name: Downstream server name
            expected: Only release if this is still the cached connection;
                a replacement opened meanwhile is left alone
        """
        cached = self._connections.get(server_name)
        if cached is None:
            if expected is not None:
                await expected.close()
            return
        if expected is not None and cached is not expected:
            await expected.close()
            logger.debug(f"[{server_name}] Stale connection already replaced, keeping the new one")
            return

        del self._connections[server_name]
        await cached.close()
        logger.info(f"[{server_name}] Connection released")

    async def release_all(self) -> None:
        """Tear down every cached connection concurrently."""
        connections = list(self._connections.values())
        self._connections.clear()
        if not connections:
            return
        await asyncio.gather(*(c.close() for c in connections), return_exceptions=True)
        logger.info(f"Released {len(connections)} connection(s) from pool {self.pool_name}")

    def get_cached(self, server_name: str) -> Optional[Connection]:
        return self._connections.get(server_name)

    @property
    def server_names(self) -> List[str]:
        return sorted(self._connections)

    def stats(self) -> Dict[str, Any]:
        """Pool statistics."""
        return {
            "pool_name": self.pool_name,
            "active_connections": len(self._connections),
            "pending_connections": len(self._pending),
            "servers": self.server_names,
        }
