"""
Aggregator context object.

Wires the process directory, configuration store, connection manager,
discovery, registry, router and exposed surface together. Several
aggregators can coexist in one process; nothing here is module-global.
"""

from typing import Any, Dict, Optional

from mcp_aggregator.core.connection_manager import ConnectionManager
from mcp_aggregator.core.directory import (
    ConfigurationStore, ProcessDirectory, StateFileProcessDirectory,
)
from mcp_aggregator.core.discovery import ToolDiscovery
from mcp_aggregator.core.models import CallResult
from mcp_aggregator.core.registry import AggregatorRegistry
from mcp_aggregator.core.router import CallRouter
from mcp_aggregator.core.surface import ToolSurface
from mcp_aggregator.utils.config import AggregatorConfig
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


class Aggregator:
    """One aggregating gateway instance."""

    def __init__(
        self,
        config: Optional[AggregatorConfig] = None,
        directory: Optional[ProcessDirectory] = None,
        configuration_store: Optional[ConfigurationStore] = None,
    ):
        """
        Initialize aggregator.

        Args:
            config: Aggregator configuration. If None, uses defaults.
            directory: Process directory. Defaults to the supervisor's
                state file under the data directory.
            configuration_store: Launch parameter source. Defaults to
                ``configuration.json`` under the data directory.
        """
        self.config = config or AggregatorConfig()

        self.configuration_store = configuration_store or ConfigurationStore(
            self.config.get_configuration_path(), data_dir=self.config.get_data_dir()
        )
        self.directory = directory or StateFileProcessDirectory(
            self.config.get_process_state_path(), configuration_store=self.configuration_store
        )

        self.connection_manager = ConnectionManager(self.directory, self.configuration_store, self.config)
        self.discovery = ToolDiscovery(self.connection_manager)
        self.registry = AggregatorRegistry(
            self.directory, self.connection_manager, self.discovery, self.config
        )
        self.router = CallRouter(self.registry)
        self.surface = ToolSurface(self.registry, self.router, server_name=self.config.server_name)

    async def start(self, poll: bool = True) -> None:
        """Build the initial registry and, unless ``poll`` is False, keep it current."""
        await self.registry.start(poll=poll)

    async def stop(self) -> None:
        await self.registry.stop()

    async def __aenter__(self) -> "Aggregator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def call(self, qualified_name: str, arguments: Any) -> CallResult:
        return await self.router.call(qualified_name, arguments)

    def status(self) -> Dict[str, Any]:
        """Snapshot of registry, pool and routing state."""
        dropped = {}
        for name in self.connection_manager.server_names:
            connection = self.connection_manager.get_cached(name)
            if connection is not None:
                dropped[name] = connection.transport.dropped_frames

        return {
            "server": self.config.server_name,
            "registry": self.registry.stats(),
            "pool": self.connection_manager.stats(),
            "calls": dict(self.router.stats),
            "dropped_frames": dropped,
        }
