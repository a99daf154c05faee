"""
Tool discovery.

Fetches the tool list of each downstream server and turns every tool into
a ``ToolDescriptor`` whose ``invoke`` routes back through the connection
manager on each call.
"""

from functools import partial
from typing import Any, Dict, List

from mcp_aggregator.core.connection_manager import ConnectionManager
from mcp_aggregator.core.exceptions import (
    AggregatorError, ConnectError, ConnectionBrokenError, DiscoveryError,
    DownstreamInvocationError, NotWritableError, RemoteError, RequestInterruptedError,
    RequestTimeoutError,
)
from mcp_aggregator.core.models import Connection, ToolDescriptor
from mcp_aggregator.core.schema import build_validator, to_json_schema, translate_tool_schema
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


def qualify(server_name: str, tool_name: str) -> str:
    return f"{server_name}/{tool_name}"


class ToolDiscovery:
    """Builds tool descriptors for downstream servers."""

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager

    async def discover(self, server_name: str) -> List[ToolDescriptor]:
        """
        Acquire a connection to ``server_name`` and describe its tools.

        Raises:
            ServerNotRunning: The server is not Online.
            DiscoveryError: No connection, or the tool listing failed.
        """
        connection = await self.connection_manager.acquire(server_name)
        if connection is None:
            raise DiscoveryError(
                f"Could not connect to {server_name}",
                error_code="NO_CONNECTION",
                details={"server": server_name},
            )
        return await self.list_tools(connection)

    async def list_tools(self, connection: Connection) -> List[ToolDescriptor]:
        """Describe every tool the connected server lists."""
        server_name = connection.server_name
        try:
            raw_tools = await connection.client.list_tools()
        except AggregatorError as e:
            raise DiscoveryError(
                f"Failed to list tools of {server_name}: {e.message}",
                error_code="LIST_TOOLS_FAILED",
                details={"server": server_name},
            ) from e

        descriptors = []
        seen = set()
        for raw in raw_tools:
            tool_name = raw.get("name") if isinstance(raw, dict) else None
            if not isinstance(tool_name, str) or not tool_name:
                logger.warning(f"[{server_name}] Skipping tool without a name: {raw!r}")
                continue
            if tool_name in seen:
                logger.warning(f"[{server_name}] Duplicate tool {tool_name}, keeping the first")
                continue
            seen.add(tool_name)
            descriptors.append(self._describe(server_name, tool_name, raw))

        logger.debug(f"[{server_name}] Discovered {len(descriptors)} tool(s)")
        return descriptors

    def _describe(self, server_name: str, tool_name: str, raw: Dict[str, Any]) -> ToolDescriptor:
        qualified_name = qualify(server_name, tool_name)
        schema = translate_tool_schema(raw.get("inputSchema"), qualified_name)
        description = raw.get("description")

        return ToolDescriptor(
            qualified_name=qualified_name,
            server_name=server_name,
            tool_name=tool_name,
            description=description if isinstance(description, str) else "",
            parameter_schema=schema,
            validator=build_validator(schema, model_name=qualified_name),
            invoke=partial(self.invoke_tool, server_name, tool_name),
            input_schema=to_json_schema(schema),
        )

    async def invoke_tool(self, server_name: str, tool_name: str, arguments: Dict[str, Any]) -> Any:
        """
        Call a downstream tool with ``arguments`` forwarded unmodified.

        The connection is re-acquired on every call. If the request could
        not be written because the connection had gone stale, that
        connection is released and the call is retried once on a fresh
        one. A request lost after it was written is never retried, since
        the server may already have run it.

        Raises:
            ServerNotRunning: The server is no longer Online.
            ConnectError: No usable connection.
            DownstreamInvocationError: The downstream call failed or was
                interrupted.
        """
        qualified_name = qualify(server_name, tool_name)

        for attempt in (1, 2):
            connection = await self.connection_manager.acquire(server_name)
            if connection is None:
                raise ConnectError(
                    f"Failed to execute {qualified_name}: could not connect to {server_name}",
                    error_code="NO_CONNECTION",
                    details={"server": server_name},
                )

            try:
                return await connection.client.call_tool(tool_name, arguments)
            except RequestInterruptedError as e:
                await self.connection_manager.release(server_name, expected=connection)
                raise DownstreamInvocationError(
                    f"Failed to execute {qualified_name}: {e.message}",
                    error_code="INTERRUPTED",
                    details={"server": server_name},
                ) from e
            except (ConnectionBrokenError, NotWritableError) as e:
                await self.connection_manager.release(server_name, expected=connection)
                if attempt == 2:
                    raise ConnectError(
                        f"Failed to execute {qualified_name}: {e.message}",
                        error_code="CONNECTION_LOST",
                        details={"server": server_name},
                    ) from e
                logger.warning(f"[{server_name}] Connection went stale before {tool_name} was sent, reconnecting")
            except RemoteError as e:
                raise DownstreamInvocationError(
                    f"Failed to execute {qualified_name}: {e.message}",
                    error_code="DOWNSTREAM_ERROR",
                    details={"server": server_name, "code": e.code, "data": e.data},
                ) from e
            except RequestTimeoutError as e:
                raise DownstreamInvocationError(
                    f"Failed to execute {qualified_name}: {e.message}",
                    error_code="REQUEST_TIMEOUT",
                    details={"server": server_name},
                ) from e
