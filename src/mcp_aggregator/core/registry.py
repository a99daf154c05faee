"""
Aggregator registry: the hot-reload engine.

Holds the live ``AggregatedRegistry`` generation, polls the process
directory for topology changes and, when the set of Online servers
changes, rebuilds the whole tool set off to the side and swaps it in with
a single reference assignment. Readers always see one complete generation.
"""

import asyncio
import inspect
from datetime import datetime
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Union

from mcp_aggregator.core.connection_manager import ConnectionManager
from mcp_aggregator.core.directory import ProcessDirectory
from mcp_aggregator.core.discovery import ToolDiscovery
from mcp_aggregator.core.exceptions import DirectoryError
from mcp_aggregator.core.models import AggregatedRegistry, RegistryState, ToolDescriptor
from mcp_aggregator.utils.config import AggregatorConfig
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

Subscriber = Callable[[AggregatedRegistry], Union[None, Awaitable[None]]]


class AggregatorRegistry:
    """
    Owns the live tool registry and keeps it in step with the directory.

    Only this object writes the live reference. Reloads are serialized by
    a lock; a poll tick that finds a reload in flight does nothing.
    """

    def __init__(
        self,
        directory: ProcessDirectory,
        connection_manager: ConnectionManager,
        discovery: ToolDiscovery,
        config: Optional[AggregatorConfig] = None,
    ):
        self.directory = directory
        self.connection_manager = connection_manager
        self.discovery = discovery
        self.config = config or AggregatorConfig()
        self.poll_interval = self.config.poll_interval

        self.state = RegistryState.EMPTY
        self._live = AggregatedRegistry.empty()
        self._topology: FrozenSet[str] = frozenset()
        self._lock = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None
        self._subscribers: List[Subscriber] = []

        # Statistics
        self.polls_performed = 0
        self.reloads_performed = 0
        self.last_poll: Optional[datetime] = None

    @property
    def live(self) -> AggregatedRegistry:
        return self._live

    @property
    def generation(self) -> int:
        return self._live.generation

    @property
    def topology(self) -> FrozenSet[str]:
        return self._topology

    @property
    def reloading(self) -> bool:
        return self._lock.locked()

    def get_tool(self, qualified_name: str) -> Optional[ToolDescriptor]:
        return self._live.tools.get(qualified_name)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback run after each reload with the new generation.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def start(self, poll: bool = True) -> AggregatedRegistry:
        """Build generation 1 and optionally start the poll loop."""
        await self.build_initial()
        if poll and self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
            logger.info(f"Polling process directory every {self.poll_interval}s")
        return self._live

    async def build_initial(self) -> AggregatedRegistry:
        async with self._lock:
            self.state = RegistryState.POPULATING
            online = await self._observe_online()
            if online is None:
                online = frozenset()

            registry = await self._build(online, generation=1)
            self._publish(registry, online)
            self.state = RegistryState.LIVE

        logger.info(
            f"Registry live with {len(registry.tools)} tool(s) from {len(registry.source_server_names)} server(s)"
        )
        return registry

    async def poll_once(self) -> bool:
        """
        Run one poll tick.

        Returns:
            True if the topology changed and a reload was performed
        """
        if self._lock.locked():
            logger.debug("Reload in flight, skipping poll tick")
            return False

        async with self._lock:
            if self.state != RegistryState.LIVE:
                return False

            self.polls_performed += 1
            self.last_poll = datetime.now()

            online = await self._observe_online()
            if online is None or online == self._topology:
                return False

            added = sorted(online - self._topology)
            removed = sorted(self._topology - online)
            logger.info(f"Topology changed (added: {added or '-'}, removed: {removed or '-'}), reloading")

            self.state = RegistryState.RELOADING
            try:
                await self.connection_manager.release_all()
                registry = await self._build(online, generation=self._live.generation + 1)
                self._publish(registry, online)
                self.reloads_performed += 1
            finally:
                if self.state == RegistryState.RELOADING:
                    self.state = RegistryState.LIVE

        logger.info(f"Reloaded registry generation {registry.generation} with {len(registry.tools)} tool(s)")
        await self._notify(registry)
        return True

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in poll loop: {e}")

    async def _observe_online(self) -> Optional[FrozenSet[str]]:
        try:
            servers = await asyncio.wait_for(
                self.directory.list_servers(), timeout=self.config.directory_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"Process directory did not answer within {self.config.directory_timeout}s")
            return None
        except DirectoryError as e:
            logger.warning(f"Process directory failed: {e}")
            return None
        return frozenset(s.name for s in servers if s.is_online)

    async def _build(self, online: FrozenSet[str], generation: int) -> AggregatedRegistry:
        names = sorted(online)
        results = await asyncio.gather(*(self._discover_server(name) for name in names))

        tools: Dict[str, ToolDescriptor] = {}
        sources = set()
        failed = set()
        for name, descriptors in zip(names, results):
            if descriptors is None:
                failed.add(name)
                continue
            sources.add(name)
            for descriptor in descriptors:
                tools[descriptor.qualified_name] = descriptor

        return AggregatedRegistry(
            generation=generation,
            tools=MappingProxyType(tools),
            source_server_names=frozenset(sources),
            failed_servers=frozenset(failed),
        )

    async def _discover_server(self, server_name: str) -> Optional[List[ToolDescriptor]]:
        try:
            return await self.discovery.discover(server_name)
        except Exception as e:
            logger.warning(f"[{server_name}] Skipping server, discovery failed: {e}")
            return None

    def _publish(self, registry: AggregatedRegistry, online: FrozenSet[str]) -> None:
        self._live = registry
        self._topology = online

    async def _notify(self, registry: AggregatedRegistry) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(registry)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Registry subscriber failed: {e}")

    async def stop(self) -> None:
        """Stop polling and release every connection."""
        if self.state == RegistryState.STOPPED:
            return
        self.state = RegistryState.DRAINING

        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

        await self.connection_manager.release_all()
        self.state = RegistryState.STOPPED
        logger.info("Registry stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "topology": sorted(self._topology),
            "polls_performed": self.polls_performed,
            "reloads_performed": self.reloads_performed,
            "last_poll": self.last_poll.isoformat() if self.last_poll else None,
            **self._live.summary(),
        }
