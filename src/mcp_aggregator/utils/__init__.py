"""Utility modules for MCP Aggregator."""

from mcp_aggregator.utils.logging import get_logger, setup_logging
from mcp_aggregator.utils.config import AggregatorConfig, get_config, load_config

__all__ = [
    "get_logger",
    "setup_logging",
    "AggregatorConfig",
    "get_config",
    "load_config",
]
