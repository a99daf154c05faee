"""Core aggregation and routing engine."""

from mcp_aggregator.core.aggregator import Aggregator
from mcp_aggregator.core.connection_manager import ConnectionManager
from mcp_aggregator.core.directory import (
    ConfigurationStore, ProcessDirectory, StateFileProcessDirectory, StaticProcessDirectory,
)
from mcp_aggregator.core.discovery import ToolDiscovery
from mcp_aggregator.core.exceptions import AggregatorError, ConfigError
from mcp_aggregator.core.registry import AggregatorRegistry
from mcp_aggregator.core.router import CallRouter
from mcp_aggregator.core.surface import ToolSurface

__all__ = [
    "Aggregator",
    "AggregatorError",
    "AggregatorRegistry",
    "CallRouter",
    "ConfigError",
    "ConfigurationStore",
    "ConnectionManager",
    "ProcessDirectory",
    "StateFileProcessDirectory",
    "StaticProcessDirectory",
    "ToolDiscovery",
    "ToolSurface",
]
