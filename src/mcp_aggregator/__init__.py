"""
MCP Aggregator - one endpoint for many MCP tool servers.

Connects to every running downstream tool server, merges their tools under
``server/tool`` names and routes calls to the right server, reloading the
tool set in place as servers come and go.
"""

__version__ = "1.0.0"
__description__ = "Aggregating gateway for MCP tool servers"

# Public API
from mcp_aggregator.core.aggregator import Aggregator
from mcp_aggregator.core.exceptions import AggregatorError
from mcp_aggregator.core.models import AggregatedRegistry, CallResult, DownstreamServer

__all__ = [
    "__version__",
    "__description__",
    "Aggregator",
    "AggregatorError",
    "AggregatedRegistry",
    "CallResult",
    "DownstreamServer",
]
