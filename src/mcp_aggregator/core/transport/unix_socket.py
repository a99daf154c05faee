"""
Local-socket transport for downstream servers that listen on a Unix
domain socket.
"""

import asyncio
from pathlib import Path
from typing import Tuple, Union

from mcp_aggregator.core.transport.base import StreamTransport


class UnixSocketTransport(StreamTransport):
    """Newline-delimited JSON over a Unix domain socket."""

    def __init__(self, socket_path: Union[str, Path], **kwargs):
        self.socket_path = str(socket_path)
        super().__init__(label=f"unix:{self.socket_path}", **kwargs)

    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        return await asyncio.open_unix_connection(self.socket_path)
