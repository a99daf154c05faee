"""
Transport layer abstraction for downstream tool-server communication.

A transport is a duplex channel of discrete JSON messages. Callers
subscribe to inbound traffic with ``messages()`` and drive the channel with
``connect()``, ``send()`` and ``close()``; there are no callback fields.

``StreamTransport`` implements the channel over an asyncio stream pair and
leaves only ``_open()`` to subclasses (Unix socket, child-process stdio).
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional, Tuple

from mcp_aggregator.core.exceptions import (
    ConnectError, ConnectionBrokenError, NotWritableError,
)
from mcp_aggregator.core.transport.framing import LineFramer, encode_message
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024

_CLOSED = object()


class Transport(ABC):
    """Abstract duplex, message-framed channel."""

    label: str = "transport"

    @abstractmethod
    async def connect(self) -> None:
        """Establish the channel. Idempotent."""
        ...

    @abstractmethod
    async def send(self, message: Any) -> None:
        """Send one message."""
        ...

    @abstractmethod
    def messages(self) -> AsyncIterator[Any]:
        """Iterate inbound messages until the channel closes."""
        ...

    @abstractmethod
    def test_liveness(self) -> bool:
        """Non-blocking check that the channel is usable."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Never raises."""
        ...

    @property
    def dropped_frames(self) -> int:
        return 0


class StreamTransport(Transport):
    """
    Newline-delimited JSON over an asyncio ``StreamReader``/``StreamWriter``.

    Lifecycle: connect (shared in-flight attempt) -> read loop feeding an
    inbox -> close (half-close, wait for the peer's EOF, then destroy).
    A channel with no traffic in either direction for ``idle_timeout``
    seconds is destroyed by the read loop.
    """

    def __init__(
        self,
        label: str,
        connect_timeout: float = 10.0,
        close_timeout: float = 2.0,
        idle_timeout: Optional[float] = None,
        max_write_buffer: int = 1024 * 1024,
    ):
        self.label = label
        self.connect_timeout = connect_timeout
        self.close_timeout = close_timeout
        self.idle_timeout = idle_timeout
        self.max_write_buffer = max_write_buffer

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connecting: Optional[asyncio.Future] = None
        self._read_task: Optional[asyncio.Task] = None

        self._connected = False
        self._destroyed = False
        self._closed = False

        self._framer = LineFramer(label)
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._eof = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._last_activity = time.monotonic()

    # -- subclass hooks -------------------------------------------------

    @abstractmethod
    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Open the underlying byte stream."""
        ...

    def _on_destroy(self) -> None:
        """Synchronous teardown of anything beyond the stream pair."""

    async def _after_close(self) -> None:
        """Asynchronous teardown run at the end of ``close()``."""

    # -- connect --------------------------------------------------------

    async def connect(self) -> None:
        """
        Connect once. Concurrent callers share the in-flight attempt.

        Raises:
            ConnectError: On socket-level failure, timeout, or if the
                transport was already closed or destroyed.
        """
        if self._connected:
            return
        if self._closed or self._destroyed:
            raise ConnectError(f"Transport {self.label} is closed")

        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._do_connect())

        await asyncio.shield(self._connecting)

    async def _do_connect(self) -> None:
        opened = False
        try:
            reader, writer = await asyncio.wait_for(self._open(), timeout=self.connect_timeout)
            opened = True
        except asyncio.TimeoutError:
            raise ConnectError(
                f"Timed out connecting to {self.label} after {self.connect_timeout}s",
                error_code="CONNECT_TIMEOUT",
            )
        except OSError as e:
            raise ConnectError(
                f"Could not connect to {self.label}: {e}",
                error_code="CONNECT_FAILED",
                details={"errno": e.errno},
            ) from e
        finally:
            # A failed attempt must not be shared with later callers
            if not opened:
                self._connecting = None

        self._reader = reader
        self._writer = writer
        self._connected = True
        self._touch()
        self._read_task = asyncio.ensure_future(self._read_loop())
        logger.debug(f"Connected to {self.label}")

    # -- send -----------------------------------------------------------

    async def send(self, message: Any) -> None:
        """
        Serialize and write one frame.

        Connects first if the channel was never connected. The frame is
        handed to the stream in a single write.

        Raises:
            NotWritableError: Channel closing/closed, or outbound buffer
                above the high-water mark.
            ConnectionBrokenError: Remote end closed (broken pipe / reset).
        """
        if not self._connected and not self._closed and not self._destroyed:
            await self.connect()

        data = encode_message(message)

        self._check_writable()
        async with self._write_lock:
            self._check_writable()
            try:
                self._writer.write(data)
                await asyncio.wait_for(self._writer.drain(), timeout=self.connect_timeout)
            except (BrokenPipeError, ConnectionResetError) as e:
                self._destroy()
                raise ConnectionBrokenError(
                    f"Connection to {self.label} broken: remote end closed",
                    error_code="EPIPE",
                    details={"reason": str(e)},
                ) from e
            except asyncio.TimeoutError:
                raise NotWritableError(
                    f"Write to {self.label} stalled for {self.connect_timeout}s",
                    error_code="WRITE_STALLED",
                )
            except OSError as e:
                raise NotWritableError(
                    f"Channel to {self.label} became unusable: {e}",
                    error_code="NOT_WRITABLE",
                ) from e

        self._touch()

    def _check_writable(self) -> None:
        if self._closed:
            raise NotWritableError(f"Transport {self.label} is closed", error_code="CLOSED")
        if self._destroyed:
            raise ConnectionBrokenError(
                f"Connection to {self.label} was closed by the remote end",
                error_code="REMOTE_CLOSED",
            )
        if self._writer is None or self._writer.is_closing():
            raise NotWritableError(f"Transport {self.label} is not writable", error_code="NOT_WRITABLE")

        buffered = self._write_buffer_size()
        if buffered > self.max_write_buffer:
            raise NotWritableError(
                f"Transport {self.label} is backed up ({buffered} bytes pending)",
                error_code="BACKPRESSURE",
                details={"buffered": buffered},
            )

    def _write_buffer_size(self) -> int:
        transport = getattr(self._writer, "transport", None)
        if transport is None:
            return 0
        try:
            return transport.get_write_buffer_size()
        except (AttributeError, NotImplementedError):
            return 0

    # -- receive --------------------------------------------------------

    async def messages(self) -> AsyncIterator[Any]:
        """
        Yield inbound messages for the life of the connection.

        Iteration can be stopped and restarted; a later call resumes with
        the next undelivered message. Ends once the channel is closed.
        """
        while True:
            message = await self._inbox.get()
            if message is _CLOSED:
                # Leave the marker for any later subscriber
                self._inbox.put_nowait(_CLOSED)
                return
            yield message

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        self._reader.read(READ_CHUNK_SIZE), timeout=self._idle_remaining()
                    )
                except asyncio.TimeoutError:
                    if self._idle_expired():
                        logger.warning(
                            f"{self.label} idle for more than {self.idle_timeout}s, tearing down"
                        )
                        break
                    continue

                if not chunk:
                    logger.debug(f"{self.label} reached EOF")
                    break

                self._touch()
                for message in self._framer.feed(chunk):
                    self._inbox.put_nowait(message)
        except (ConnectionError, OSError) as e:
            logger.debug(f"{self.label} read failed: {e}")
        finally:
            self._eof.set()
            self._destroy()
            self._inbox.put_nowait(_CLOSED)

    # -- liveness / idle --------------------------------------------------

    def test_liveness(self) -> bool:
        """True while connected and neither closing nor destroyed."""
        return (
            self._connected
            and not self._destroyed
            and not self._closed
            and self._writer is not None
            and not self._writer.is_closing()
        )

    @property
    def dropped_frames(self) -> int:
        return self._framer.dropped_frames

    def _touch(self) -> None:
        self._last_activity = time.monotonic()

    def _idle_remaining(self) -> Optional[float]:
        if self.idle_timeout is None:
            return None
        return max(0.0, self.idle_timeout - (time.monotonic() - self._last_activity))

    def _idle_expired(self) -> bool:
        return (
            self.idle_timeout is not None
            and time.monotonic() - self._last_activity >= self.idle_timeout
        )

    # -- close ------------------------------------------------------------

    def _destroy(self) -> None:
        if self._destroyed:
            return
        self._destroyed = True
        self._connected = False

        if self._writer is not None:
            transport = getattr(self._writer, "transport", None)
            if transport is not None:
                transport.abort()
            else:
                self._writer.close()

        self._on_destroy()

    async def close(self) -> None:
        """
        Half-close the write side, wait up to ``close_timeout`` for the
        peer to acknowledge with EOF, then force-destroy. Always returns.
        """
        if self._closed:
            return
        self._closed = True

        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()

        if self._writer is not None and not self._destroyed:
            try:
                if self._writer.can_write_eof():
                    self._writer.write_eof()
            except (OSError, RuntimeError) as e:
                logger.debug(f"{self.label} half-close failed: {e}")

            try:
                await asyncio.wait_for(self._eof.wait(), timeout=self.close_timeout)
            except asyncio.TimeoutError:
                logger.debug(f"{self.label} close not acknowledged within {self.close_timeout}s")

        self._destroy()

        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
        elif self._read_task is None:
            self._inbox.put_nowait(_CLOSED)

        await self._after_close()
        logger.debug(f"Closed {self.label}")
