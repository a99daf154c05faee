"""
JSON-RPC protocol client for downstream tool servers.

Runs the tool protocol over any ``Transport``: the initialize handshake,
request/response correlation by id, paginated ``tools/list`` and
``tools/call``.
"""

import asyncio
import itertools
from typing import Any, Dict, List, Optional

from mcp_aggregator.core.exceptions import (
    AggregatorError, ConnectionBrokenError, RemoteError, RequestInterruptedError, RequestTimeoutError,
)
from mcp_aggregator.core.transport.base import Transport
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

PROTOCOL_VERSION = "2024-11-05"
JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601


class ProtocolClient:
    """
    Client side of one downstream session.

    The client does not own its transport: ``close()`` stops the dispatcher
    and fails outstanding requests, and the caller closes the transport.
    """

    def __init__(
        self,
        transport: Transport,
        client_name: str = "mcp-aggregator",
        client_version: str = "1.0.0",
        request_timeout: float = 60.0,
    ):
        self.transport = transport
        self.client_name = client_name
        self.client_version = client_version
        self.request_timeout = request_timeout

        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None

        self._ids = itertools.count(1)
        self._pending: Dict[Any, asyncio.Future] = {}
        self._dispatcher: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> Dict[str, Any]:
        """
        Connect the transport and perform the initialize handshake.

        Returns:
            The downstream ``initialize`` result
        """
        await self.transport.connect()
        self._dispatcher = asyncio.ensure_future(self._dispatch())

        result = await self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": self.client_name, "version": self.client_version},
        })
        self.server_info = result.get("serverInfo", {}) if isinstance(result, dict) else {}
        self.server_capabilities = result.get("capabilities", {}) if isinstance(result, dict) else {}
        self.protocol_version = result.get("protocolVersion") if isinstance(result, dict) else None

        await self.notify("notifications/initialized")
        logger.debug(
            f"Initialized session with {self.server_info.get('name', self.transport.label)} "
            f"(protocol {self.protocol_version})"
        )
        return result

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send a request and wait for its response.

        Raises:
            ConnectionBrokenError: Client closed, or the channel broke
                while writing the request.
            RequestInterruptedError: The channel died after the request
                was written, before the response arrived.
            NotWritableError: The channel refused the write.
            RequestTimeoutError: No response within the timeout.
            RemoteError: The server answered with a JSON-RPC error.
        """
        if self._closed:
            raise ConnectionBrokenError(f"Client for {self.transport.label} is closed")

        request_id = next(self._ids)
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.transport.send(message)
            try:
                return await asyncio.wait_for(future, timeout=timeout or self.request_timeout)
            except ConnectionBrokenError as e:
                # The server may already have acted on the request
                raise RequestInterruptedError(
                    f"{method} on {self.transport.label} was interrupted: {e.message}",
                    error_code=e.error_code,
                    details={"method": method},
                ) from e
        except asyncio.TimeoutError:
            raise RequestTimeoutError(
                f"{method} on {self.transport.label} timed out after {timeout or self.request_timeout}s",
                error_code="REQUEST_TIMEOUT",
                details={"method": method},
            )
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        await self.transport.send(message)

    async def list_tools(self) -> List[Dict[str, Any]]:
        """List every tool, following ``nextCursor`` pagination."""
        tools: List[Dict[str, Any]] = []
        cursor = None
        while True:
            result = await self.request("tools/list", {"cursor": cursor} if cursor else None)
            tools.extend(result.get("tools", []) if isinstance(result, dict) else [])
            cursor = result.get("nextCursor") if isinstance(result, dict) else None
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        return await self.request("tools/call", {"name": name, "arguments": arguments})

    async def _dispatch(self) -> None:
        try:
            async for message in self.transport.messages():
                if not isinstance(message, dict):
                    logger.debug(f"Ignoring non-object message from {self.transport.label}")
                    continue
                if "method" in message:
                    await self._handle_incoming(message)
                else:
                    self._resolve(message)
        finally:
            self._closed = True
            self._fail_pending(
                ConnectionBrokenError(
                    f"Connection to {self.transport.label} closed with requests in flight",
                    error_code="REMOTE_CLOSED",
                )
            )

    def _resolve(self, message: Dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.debug(f"Unmatched response id {message.get('id')!r} from {self.transport.label}")
            return

        error = message.get("error")
        if error is not None:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            future.set_exception(RemoteError(
                error.get("message", "Unknown error"),
                code=error.get("code"),
                data=error.get("data"),
            ))
        else:
            future.set_result(message.get("result"))

    async def _handle_incoming(self, message: Dict[str, Any]) -> None:
        method = message["method"]
        if "id" not in message:
            logger.debug(f"Notification from {self.transport.label}: {method}")
            return

        if method == "ping":
            reply: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": JSONRPC_VERSION,
                "id": message["id"],
                "error": {"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
            }

        try:
            await self.transport.send(reply)
        except AggregatorError as e:
            logger.debug(f"Could not answer {method} from {self.transport.label}: {e}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def close(self) -> None:
        """Stop dispatching and fail outstanding requests. Never raises."""
        if self._closed:
            return
        self._closed = True

        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass

        self._fail_pending(
            ConnectionBrokenError(f"Client for {self.transport.label} closed", error_code="CLIENT_CLOSED")
        )
