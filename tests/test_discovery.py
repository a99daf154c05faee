"""
Test tool discovery and downstream invocation.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mcp_aggregator.core.connection_manager import ConnectionManager
from mcp_aggregator.core.directory import ConfigurationStore, StaticProcessDirectory
from mcp_aggregator.core.discovery import ToolDiscovery, qualify
from mcp_aggregator.core.exceptions import (
    ConnectError, ConnectionBrokenError, DiscoveryError, DownstreamInvocationError,
    RemoteError, RequestInterruptedError, RequestTimeoutError, ServerNotRunning,
)
from mcp_aggregator.core.schema import ObjectSchema
from mcp_aggregator.utils.config import AggregatorConfig
from tests.utils.fakes import make_connection
from tests.utils.helpers import write_configuration

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo a message back",
    "inputSchema": {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    },
}


class TestToolDiscovery:
    """Test ToolDiscovery with a mocked connection manager."""

    def setup_method(self):
        """Setup test fixtures."""
        self.connection = make_connection("a/srv")
        self.manager = MagicMock()
        self.manager.acquire = AsyncMock(return_value=self.connection)
        self.manager.release = AsyncMock()
        self.discovery = ToolDiscovery(self.manager)

    def test_qualify(self):
        assert qualify("alice/search", "query") == "alice/search/query"

    @pytest.mark.asyncio
    async def test_discover_builds_descriptors(self):
        self.connection.client.list_tools.return_value = [
            ECHO_TOOL,
            {"name": "ping"},
            {"name": "broken", "inputSchema": {"properties": "nope"}},
        ]

        descriptors = await self.discovery.discover("a/srv")

        assert [d.qualified_name for d in descriptors] == ["a/srv/echo", "a/srv/ping", "a/srv/broken"]
        echo, ping, broken = descriptors
        assert echo.server_name == "a/srv"
        assert echo.tool_name == "echo"
        assert echo.description == "Echo a message back"
        assert echo.input_schema["required"] == ["message"]
        assert ping.description == ""
        assert ping.parameter_schema == ObjectSchema(properties={})
        assert broken.parameter_schema.unconstrained

    @pytest.mark.asyncio
    async def test_skips_nameless_and_duplicate_tools(self):
        self.connection.client.list_tools.return_value = [
            ECHO_TOOL,
            {"description": "no name"},
            "not a tool",
            {"name": "echo", "description": "second echo"},
        ]

        descriptors = await self.discovery.discover("a/srv")

        assert len(descriptors) == 1
        assert descriptors[0].description == "Echo a message back"

    @pytest.mark.asyncio
    async def test_discover_without_connection(self):
        self.manager.acquire.return_value = None

        with pytest.raises(DiscoveryError):
            await self.discovery.discover("a/srv")

    @pytest.mark.asyncio
    async def test_discover_offline_server(self):
        self.manager.acquire.side_effect = ServerNotRunning("a/srv is not running")

        with pytest.raises(ServerNotRunning):
            await self.discovery.discover("a/srv")

    @pytest.mark.asyncio
    async def test_listing_failure(self):
        self.connection.client.list_tools.side_effect = RequestTimeoutError("too slow")

        with pytest.raises(DiscoveryError) as exc_info:
            await self.discovery.discover("a/srv")

        assert exc_info.value.error_code == "LIST_TOOLS_FAILED"

    @pytest.mark.asyncio
    async def test_invoke_reacquires_each_call(self):
        self.connection.client.list_tools.return_value = [ECHO_TOOL]
        self.connection.client.call_tool.return_value = {"content": [{"type": "text", "text": "hi"}]}
        echo = (await self.discovery.discover("a/srv"))[0]

        arguments = {"message": "hi", "extra": [1, 2]}
        assert await echo.invoke(arguments) == {"content": [{"type": "text", "text": "hi"}]}
        await echo.invoke(arguments)

        assert self.manager.acquire.await_count == 3
        self.connection.client.call_tool.assert_awaited_with("echo", arguments)

    @pytest.mark.asyncio
    async def test_stale_connection_retried_once(self):
        fresh = make_connection("a/srv")
        fresh.client.call_tool.return_value = {"ok": True}
        self.connection.client.call_tool.side_effect = ConnectionBrokenError("pipe closed")
        self.manager.acquire.side_effect = [self.connection, fresh]

        assert await self.discovery.invoke_tool("a/srv", "echo", {}) == {"ok": True}
        self.manager.release.assert_awaited_once_with("a/srv", expected=self.connection)

    @pytest.mark.asyncio
    async def test_stale_twice_gives_up(self):
        self.connection.client.call_tool.side_effect = ConnectionBrokenError("pipe closed")

        with pytest.raises(ConnectError) as exc_info:
            await self.discovery.invoke_tool("a/srv", "echo", {})

        assert exc_info.value.error_code == "CONNECTION_LOST"
        assert self.manager.release.await_count == 2

    @pytest.mark.asyncio
    async def test_interrupted_call_is_not_repeated(self):
        fresh = make_connection("a/srv")
        self.connection.client.call_tool.side_effect = RequestInterruptedError(
            "tools/call was interrupted", error_code="REMOTE_CLOSED",
        )
        self.manager.acquire.side_effect = [self.connection, fresh]

        with pytest.raises(DownstreamInvocationError) as exc_info:
            await self.discovery.invoke_tool("a/srv", "charge_card", {"amount": 5})

        error = exc_info.value
        assert error.error_code == "INTERRUPTED"
        assert error.fault == "service"
        assert error.message.startswith("Failed to execute a/srv/charge_card")
        self.connection.client.call_tool.assert_awaited_once()
        fresh.client.call_tool.assert_not_awaited()
        self.manager.release.assert_awaited_once_with("a/srv", expected=self.connection)

    @pytest.mark.asyncio
    async def test_downstream_error(self):
        self.connection.client.call_tool.side_effect = RemoteError("boom", code=-32000, data={"why": "x"})

        with pytest.raises(DownstreamInvocationError) as exc_info:
            await self.discovery.invoke_tool("a/srv", "echo", {})

        error = exc_info.value
        assert error.message == "Failed to execute a/srv/echo: boom"
        assert error.details["code"] == -32000
        assert error.details["data"] == {"why": "x"}
        self.manager.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_connection_on_invoke(self):
        self.manager.acquire.return_value = None

        with pytest.raises(ConnectError) as exc_info:
            await self.discovery.invoke_tool("a/srv", "echo", {})

        assert "Failed to execute a/srv/echo" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_server_gone_on_invoke(self):
        self.manager.acquire.side_effect = ServerNotRunning("a/srv is not running")

        with pytest.raises(ServerNotRunning):
            await self.discovery.invoke_tool("a/srv", "echo", {})


class TestConcurrentInvocation:
    """Test concurrent calls sharing one pooled connection."""

    def setup_method(self):
        """Setup test fixtures."""
        self.directory = StaticProcessDirectory({"a/one": True})
        self.config = AggregatorConfig(directory_timeout=0.5)

    @pytest.mark.asyncio
    async def test_stale_connection_replaced_once(self, tmp_path):
        store = ConfigurationStore(write_configuration(tmp_path, {"a/one": {"run": "a-server"}}))
        manager = ConnectionManager(self.directory, store, self.config)
        discovery = ToolDiscovery(manager)

        stale = make_connection("a/one")
        fresh = make_connection("a/one")
        failures = iter([0, 0.02])

        async def refuse(name, arguments):
            await asyncio.sleep(next(failures))
            raise ConnectionBrokenError("pipe closed", error_code="EPIPE")

        async def answer(name, arguments):
            await asyncio.sleep(0.05)
            return {"content": [{"type": "text", "text": arguments["message"]}]}

        stale.client.call_tool.side_effect = refuse
        fresh.client.call_tool.side_effect = answer
        connections = iter([stale, fresh])

        with patch.object(manager, "_connect", AsyncMock(side_effect=lambda name, params: next(connections))) as connect:
            assert await manager.acquire("a/one") is stale

            results = await asyncio.gather(
                discovery.invoke_tool("a/one", "echo", {"message": "first"}),
                discovery.invoke_tool("a/one", "echo", {"message": "second"}),
            )

        assert [r["content"][0]["text"] for r in results] == ["first", "second"]
        assert connect.await_count == 2
        assert manager.get_cached("a/one") is fresh
        fresh.transport.close.assert_not_awaited()
        assert fresh.client.call_tool.await_count == 2
