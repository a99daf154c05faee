"""
Test the downstream connection pool.
"""

import asyncio
import sys
from unittest.mock import AsyncMock, patch

import pytest

from mcp_aggregator.core.connection_manager import ConnectionManager
from mcp_aggregator.core.directory import ConfigurationStore, ProcessDirectory, StaticProcessDirectory
from mcp_aggregator.core.exceptions import ConnectError, ServerNotRunning
from mcp_aggregator.core.transport import StdioTransport, UnixSocketTransport
from mcp_aggregator.utils.config import AggregatorConfig
from tests.utils.fakes import make_connection
from tests.utils.helpers import FIXTURE_SERVER, fixture_run_command, write_configuration


class HangingDirectory(ProcessDirectory):
    async def list_servers(self, name="all"):
        await asyncio.sleep(3600)
        return []


class TestConnectionManager:
    """Test pooling behaviour with the session setup mocked out."""

    def setup_method(self):
        """Setup test fixtures."""
        self.directory = StaticProcessDirectory({"a/one": True, "b/two": True, "c/off": False})
        self.config = AggregatorConfig(directory_timeout=0.2, pool_name="test-pool")

    def _manager(self, tmp_path):
        store = ConfigurationStore(write_configuration(tmp_path, {
            "a/one": {"run": "a-server"},
            "b/two": {"run": "b-server"},
        }))
        return ConnectionManager(self.directory, store, self.config)

    @pytest.mark.asyncio
    async def test_acquire_caches_connection(self, tmp_path):
        manager = self._manager(tmp_path)
        with patch.object(manager, "_connect", AsyncMock(side_effect=lambda name, params: make_connection(name))) as connect:
            first = await manager.acquire("a/one")
            second = await manager.acquire("a/one")

        assert first is second
        assert connect.await_count == 1
        assert manager.get_cached("a/one") is first

    @pytest.mark.asyncio
    async def test_concurrent_acquires_share_one_attempt(self, tmp_path):
        manager = self._manager(tmp_path)

        async def slow_connect(name, params):
            await asyncio.sleep(0.05)
            return make_connection(name)

        with patch.object(manager, "_connect", AsyncMock(side_effect=slow_connect)) as connect:
            results = await asyncio.gather(*(manager.acquire("a/one") for _ in range(5)))

        assert connect.await_count == 1
        assert all(r is results[0] for r in results)
        assert manager.stats()["pending_connections"] == 0

    @pytest.mark.asyncio
    async def test_offline_server_raises(self, tmp_path):
        manager = self._manager(tmp_path)

        with patch.object(manager, "_connect", AsyncMock()) as connect:
            with pytest.raises(ServerNotRunning):
                await manager.acquire("c/off")
            with pytest.raises(ServerNotRunning):
                await manager.acquire("nobody/home")

        connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_directory_timeout_counts_as_offline(self, tmp_path):
        store = ConfigurationStore(write_configuration(tmp_path, {"a/one": {}}))
        manager = ConnectionManager(HangingDirectory(), store, self.config)

        with pytest.raises(ServerNotRunning):
            await manager.acquire("a/one")

    @pytest.mark.asyncio
    async def test_dead_connection_is_rebuilt(self, tmp_path):
        manager = self._manager(tmp_path)
        with patch.object(manager, "_connect", AsyncMock(side_effect=lambda name, params: make_connection(name))):
            first = await manager.acquire("a/one")
            first.transport.test_liveness.return_value = False

            second = await manager.acquire("a/one")

        assert second is not first
        first.client.close.assert_awaited_once()
        first.transport.close.assert_awaited_once()
        assert manager.get_cached("a/one") is second

    @pytest.mark.asyncio
    async def test_connect_failure_returns_none(self, tmp_path):
        manager = self._manager(tmp_path)
        with patch.object(manager, "_connect", AsyncMock(side_effect=ConnectError("refused"))):
            assert await manager.acquire("a/one") is None

        assert manager.get_cached("a/one") is None
        assert manager.stats()["pending_connections"] == 0

    @pytest.mark.asyncio
    async def test_missing_configuration_returns_none(self, tmp_path):
        self.directory.set_online("d/unconfigured")
        manager = self._manager(tmp_path)

        assert await manager.acquire("d/unconfigured") is None

    @pytest.mark.asyncio
    async def test_release(self, tmp_path):
        manager = self._manager(tmp_path)
        with patch.object(manager, "_connect", AsyncMock(side_effect=lambda name, params: make_connection(name))):
            one = await manager.acquire("a/one")
            two = await manager.acquire("b/two")

        await manager.release("a/one")
        await manager.release("a/one")

        one.transport.close.assert_awaited_once()
        assert manager.server_names == ["b/two"]

        await manager.release_all()

        two.transport.close.assert_awaited_once()
        assert manager.stats() == {
            "pool_name": "test-pool",
            "active_connections": 0,
            "pending_connections": 0,
            "servers": [],
        }

    @pytest.mark.asyncio
    async def test_release_expected_keeps_replacement(self, tmp_path):
        manager = self._manager(tmp_path)
        with patch.object(manager, "_connect", AsyncMock(side_effect=lambda name, params: make_connection(name))):
            stale = await manager.acquire("a/one")
            await manager.release("a/one", expected=stale)
            fresh = await manager.acquire("a/one")

            # A late release of the old connection leaves the new one cached
            await manager.release("a/one", expected=stale)

        assert manager.get_cached("a/one") is fresh
        fresh.transport.close.assert_not_awaited()

        await manager.release("a/one", expected=fresh)
        assert manager.get_cached("a/one") is None
        fresh.transport.close.assert_awaited_once()


@pytest.mark.integration
class TestConnectionManagerTransports:
    """Test real session setup against the fixture server."""

    @pytest.mark.asyncio
    async def test_stdio_session(self, test_config):
        directory = StaticProcessDirectory({"fixture/echo": True})
        store = ConfigurationStore(test_config.get_configuration_path())
        manager = ConnectionManager(directory, store, test_config)
        try:
            connection = await manager.acquire("fixture/echo")

            assert isinstance(connection.transport, StdioTransport)
            assert connection.client.server_info["name"] == "fixture-echo"
            assert connection.is_alive()
        finally:
            await manager.release_all()

        assert not connection.is_alive()

    @pytest.mark.asyncio
    async def test_prefers_socket(self, tmp_path, socket_dir, test_config):
        socket_path = socket_dir / "echo.sock"
        process = await asyncio.create_subprocess_exec(
            sys.executable, str(FIXTURE_SERVER), "--socket", str(socket_path),
        )
        manager = None
        try:
            for _ in range(100):
                if socket_path.exists():
                    break
                await asyncio.sleep(0.05)

            store = ConfigurationStore(write_configuration(tmp_path / "sock", {
                "fixture/echo": {"run": "/nonexistent/server", "socketPath": str(socket_path)},
            }))
            manager = ConnectionManager(StaticProcessDirectory({"fixture/echo": True}), store, test_config)

            connection = await manager.acquire("fixture/echo")

            assert isinstance(connection.transport, UnixSocketTransport)
            assert await connection.client.call_tool("echo", {"message": "via socket"}) == {
                "content": [{"type": "text", "text": "via socket"}]
            }
        finally:
            if manager is not None:
                await manager.release_all()
            process.kill()
            await process.wait()

    @pytest.mark.asyncio
    async def test_stale_socket_falls_back_to_stdio(self, tmp_path, socket_dir, test_config):
        stale = socket_dir / "stale.sock"
        stale.write_text("", encoding="utf-8")
        store = ConfigurationStore(write_configuration(tmp_path / "stale", {
            "fixture/echo": {"run": fixture_run_command(), "socketPath": str(stale)},
        }))
        manager = ConnectionManager(StaticProcessDirectory({"fixture/echo": True}), store, test_config)
        try:
            connection = await manager.acquire("fixture/echo")
            assert isinstance(connection.transport, StdioTransport)
        finally:
            await manager.release_all()
