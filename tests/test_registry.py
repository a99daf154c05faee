"""
Test the hot-reloading aggregator registry.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mcp_aggregator.core.directory import StaticProcessDirectory
from mcp_aggregator.core.exceptions import DirectoryError, DiscoveryError
from mcp_aggregator.core.models import RegistryState
from mcp_aggregator.core.registry import AggregatorRegistry
from mcp_aggregator.utils.config import AggregatorConfig
from tests.utils.fakes import make_descriptor

TOOLS = {
    "a/srv": ["a/srv/echo"],
    "b/srv": ["b/srv/sum", "b/srv/mul"],
}


class FailingDirectory(StaticProcessDirectory):
    async def list_servers(self, name="all"):
        raise DirectoryError("state file unreadable")


class TestAggregatorRegistry:
    """Test registry lifecycle and reloads."""

    def setup_method(self):
        """Setup test fixtures."""
        self.directory = StaticProcessDirectory({"a/srv": True, "b/srv": True})
        self.connection_manager = MagicMock()
        self.connection_manager.release_all = AsyncMock()
        self.discovery = MagicMock()
        self.discovery.discover = AsyncMock(side_effect=self._discover)
        self.discover_delay = 0.0
        self.failing = set()
        self.config = AggregatorConfig(poll_interval=0.05, directory_timeout=1.0)
        self.registry = AggregatorRegistry(self.directory, self.connection_manager, self.discovery, self.config)

    async def _discover(self, server_name):
        if self.discover_delay:
            await asyncio.sleep(self.discover_delay)
        if server_name in self.failing:
            raise DiscoveryError(f"Could not connect to {server_name}")
        return [make_descriptor(name) for name in TOOLS.get(server_name, [])]

    @pytest.mark.asyncio
    async def test_initial_build(self):
        assert self.registry.state == RegistryState.EMPTY
        assert self.registry.generation == 0

        live = await self.registry.start(poll=False)

        assert self.registry.state == RegistryState.LIVE
        assert live.generation == 1
        assert live.tool_names == ["a/srv/echo", "b/srv/mul", "b/srv/sum"]
        assert live.source_server_names == frozenset({"a/srv", "b/srv"})
        assert self.registry.topology == frozenset({"a/srv", "b/srv"})
        assert self.registry.get_tool("a/srv/echo").tool_name == "echo"

    @pytest.mark.asyncio
    async def test_unchanged_topology_keeps_generation(self):
        await self.registry.start(poll=False)
        before = self.registry.live

        assert await self.registry.poll_once() is False
        assert await self.registry.poll_once() is False

        assert self.registry.live is before
        assert self.registry.polls_performed == 2
        assert self.registry.reloads_performed == 0
        self.connection_manager.release_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_going_offline_reloads(self):
        await self.registry.start(poll=False)
        old = self.registry.live

        self.directory.set_offline("b/srv")
        assert await self.registry.poll_once() is True

        live = self.registry.live
        assert live.generation == 2
        assert live.tool_names == ["a/srv/echo"]
        assert self.registry.get_tool("b/srv/sum") is None
        self.connection_manager.release_all.assert_awaited_once()

        # The previous generation is untouched
        assert old.tool_names == ["a/srv/echo", "b/srv/mul", "b/srv/sum"]

    @pytest.mark.asyncio
    async def test_server_coming_online_reloads(self):
        self.directory.set_offline("b/srv")
        await self.registry.start(poll=False)
        assert self.registry.live.tool_names == ["a/srv/echo"]

        self.directory.set_online("b/srv")
        assert await self.registry.poll_once() is True
        assert self.registry.live.tool_names == ["a/srv/echo", "b/srv/mul", "b/srv/sum"]

    @pytest.mark.asyncio
    async def test_discovery_failure_skips_server(self):
        self.failing.add("a/srv")

        live = await self.registry.start(poll=False)

        assert live.tool_names == ["b/srv/mul", "b/srv/sum"]
        assert live.failed_servers == frozenset({"a/srv"})
        assert live.source_server_names == frozenset({"b/srv"})
        assert self.registry.topology == frozenset({"a/srv", "b/srv"})

    @pytest.mark.asyncio
    async def test_directory_failure(self):
        registry = AggregatorRegistry(FailingDirectory(), self.connection_manager, self.discovery, self.config)

        live = await registry.start(poll=False)

        assert registry.state == RegistryState.LIVE
        assert live.generation == 1
        assert live.tools == {}
        assert await registry.poll_once() is False
        assert registry.generation == 1

    @pytest.mark.asyncio
    async def test_concurrent_ticks_reload_once(self):
        await self.registry.start(poll=False)
        self.directory.set_offline("a/srv")
        self.discover_delay = 0.05

        results = await asyncio.gather(self.registry.poll_once(), self.registry.poll_once())

        assert sorted(results) == [False, True]
        assert self.registry.generation == 2
        assert self.registry.reloads_performed == 1

    @pytest.mark.asyncio
    async def test_readers_see_whole_generations(self):
        await self.registry.start(poll=False)
        self.directory.set_offline("a/srv")
        self.discover_delay = 0.05

        reload = asyncio.ensure_future(self.registry.poll_once())
        await asyncio.sleep(0.01)

        assert self.registry.reloading is True
        assert self.registry.state == RegistryState.RELOADING
        assert self.registry.live.generation == 1
        assert self.registry.live.tool_names == ["a/srv/echo", "b/srv/mul", "b/srv/sum"]

        await reload
        assert self.registry.state == RegistryState.LIVE
        assert self.registry.live.tool_names == ["b/srv/mul", "b/srv/sum"]

    @pytest.mark.asyncio
    async def test_subscribers(self):
        await self.registry.start(poll=False)
        seen = []
        async_seen = []

        async def async_subscriber(registry):
            async_seen.append(registry.generation)

        def broken_subscriber(registry):
            raise RuntimeError("subscriber bug")

        self.registry.subscribe(broken_subscriber)
        unsubscribe = self.registry.subscribe(lambda registry: seen.append(registry.generation))
        self.registry.subscribe(async_subscriber)

        self.directory.set_offline("a/srv")
        await self.registry.poll_once()

        assert seen == [2]
        assert async_seen == [2]

        unsubscribe()
        self.directory.set_online("a/srv")
        await self.registry.poll_once()

        assert seen == [2]
        assert async_seen == [2, 3]

    @pytest.mark.asyncio
    async def test_registry_is_immutable(self):
        live = await self.registry.start(poll=False)

        with pytest.raises(TypeError):
            live.tools["x/y/z"] = live.tools["a/srv/echo"]

    @pytest.mark.asyncio
    async def test_poll_loop_picks_up_changes(self):
        await self.registry.start(poll=True)
        try:
            self.directory.set_offline("b/srv")
            for _ in range(100):
                if self.registry.generation == 2:
                    break
                await asyncio.sleep(0.02)

            assert self.registry.generation == 2
            assert self.registry.live.tool_names == ["a/srv/echo"]
        finally:
            await self.registry.stop()

    @pytest.mark.asyncio
    async def test_stop(self):
        await self.registry.start(poll=True)

        await self.registry.stop()
        await self.registry.stop()

        assert self.registry.state == RegistryState.STOPPED
        self.connection_manager.release_all.assert_awaited_once()

        self.directory.set_offline("a/srv")
        assert await self.registry.poll_once() is False

    @pytest.mark.asyncio
    async def test_stats(self):
        await self.registry.start(poll=False)
        await self.registry.poll_once()

        stats = self.registry.stats()

        assert stats["state"] == "live"
        assert stats["generation"] == 1
        assert stats["tool_count"] == 3
        assert stats["topology"] == ["a/srv", "b/srv"]
        assert stats["polls_performed"] == 1
        assert stats["last_poll"] is not None
