"""Framed-message transports to downstream tool servers."""

from mcp_aggregator.core.transport.base import StreamTransport, Transport
from mcp_aggregator.core.transport.framing import LineFramer, encode_message
from mcp_aggregator.core.transport.stdio import StdioTransport
from mcp_aggregator.core.transport.unix_socket import UnixSocketTransport

__all__ = [
    "Transport",
    "StreamTransport",
    "StdioTransport",
    "UnixSocketTransport",
    "LineFramer",
    "encode_message",
]
