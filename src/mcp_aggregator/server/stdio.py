"""
stdio binding of the exposed tool surface.

Reads newline-delimited JSON-RPC from stdin and writes responses and
notifications to stdout, one JSON document per line. Logging must stay on
stderr while this binding runs.
"""

import asyncio
import sys
from typing import Any, Optional, Set

from mcp_aggregator.core.aggregator import Aggregator
from mcp_aggregator.core.models import AggregatedRegistry
from mcp_aggregator.core.transport.framing import DELIMITER, encode_message
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


class _StdoutWriter:
    """
    StreamWriter-like wrapper around a blocking binary stream.

    ``write`` only queues; ``drain`` does the blocking write and flush in a
    worker thread so a slow reader never stalls the event loop.
    """

    def __init__(self, stream):
        self._stream = stream
        self._pending = bytearray()

    def write(self, data: bytes) -> None:
        self._pending.extend(data)

    async def drain(self) -> None:
        data = bytes(self._pending)
        self._pending.clear()
        if data:
            await asyncio.to_thread(self._write_all, data)

    def _write_all(self, data: bytes) -> None:
        self._stream.write(data)
        self._stream.flush()


class StdioServer:
    """Serves one client over a pair of byte streams (stdin/stdout by default)."""

    def __init__(
        self,
        aggregator: Aggregator,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Optional[Any] = None,
    ):
        self.aggregator = aggregator
        self.surface = aggregator.surface
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._in_flight: Set[asyncio.Task] = set()

    async def serve(self) -> None:
        """Start the aggregator, serve until stdin closes, then stop."""
        await self.aggregator.start()
        if self._writer is None:
            self._writer = _StdoutWriter(sys.stdout.buffer)
        unsubscribe = self.aggregator.registry.subscribe(self._on_reload)
        logger.info("Serving MCP over stdio")

        try:
            reader = self._reader or await self._open_stdin()
            await self._read_requests(reader)
            if self._in_flight:
                await asyncio.gather(*self._in_flight, return_exceptions=True)
        finally:
            unsubscribe()
            for task in list(self._in_flight):
                task.cancel()
            await self.aggregator.stop()
            logger.info("stdio session ended")

    async def _open_stdin(self) -> asyncio.StreamReader:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
        return reader

    async def _read_requests(self, reader: asyncio.StreamReader) -> None:
        buffer = bytearray()
        while True:
            chunk = await reader.read(64 * 1024)
            if not chunk:
                break
            buffer.extend(chunk)
            while True:
                index = buffer.find(DELIMITER)
                if index < 0:
                    break
                line = bytes(buffer[:index])
                del buffer[:index + 1]
                if line.strip():
                    self._spawn(line)

        if buffer.strip():
            self._spawn(bytes(buffer))

    def _spawn(self, line: bytes) -> None:
        # Requests run concurrently so a slow tool does not block the session
        task = asyncio.create_task(self._handle_line(line))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _handle_line(self, line: bytes) -> None:
        reply = await self.surface.handle_raw(line)
        if reply is not None:
            await self.send(reply)

    async def send(self, message: Any) -> None:
        """Write one frame and wait until stdout accepts it."""
        async with self._write_lock:
            self._writer.write(encode_message(message))
            try:
                await self._writer.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.warning(f"stdout closed: {e}")

    async def _on_reload(self, registry: AggregatedRegistry) -> None:
        await self.send(self.surface.list_changed_notification())
