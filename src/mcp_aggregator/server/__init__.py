"""Bindings of the exposed tool surface (stdio and HTTP/SSE)."""

from mcp_aggregator.server.sse import SseServer
from mcp_aggregator.server.stdio import StdioServer

__all__ = ["SseServer", "StdioServer"]
