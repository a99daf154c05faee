"""
Child-process transport.

Spawns a downstream server and speaks newline-delimited JSON over its
stdin/stdout. The child's stderr is relayed line by line to the DEBUG log.
"""

import asyncio
from typing import Dict, List, Optional, Tuple

from mcp_aggregator.core.transport.base import StreamTransport
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


class StdioTransport(StreamTransport):
    """Transport over a spawned child process."""

    def __init__(
        self,
        command: str,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        **kwargs,
    ):
        self.command = command
        self.args = list(args or [])
        self.cwd = cwd
        self.env = env
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        super().__init__(label=f"stdio:{command}", **kwargs)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        logger.debug(f"Spawning {self.command} {' '.join(self.args)} (cwd={self.cwd})")
        self._process = await asyncio.create_subprocess_exec(
            self.command, *self.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=self.env or None,
        )
        self._stderr_task = asyncio.ensure_future(self._relay_stderr())
        return self._process.stdout, self._process.stdin

    async def _relay_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # Over-long line; the stream discards it
                continue
            if not line:
                return
            logger.debug(f"[{self.label} stderr] {line.decode('utf-8', errors='replace').rstrip()}")

    def _on_destroy(self) -> None:
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    async def _after_close(self) -> None:
        process = self._process
        if process is not None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.close_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.label} did not exit after terminate, killing pid {process.pid}")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        if self._stderr_task is not None and not self._stderr_task.done():
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
