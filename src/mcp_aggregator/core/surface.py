"""
Exposed tool surface.

Transport-independent JSON-RPC 2.0 handler for the aggregator's own
clients. The stdio and SSE bindings feed decoded messages in and write the
returned responses out.
"""

import json
from typing import Any, Dict, List, Optional, Union

from mcp_aggregator import __version__
from mcp_aggregator.core.client import JSONRPC_VERSION, PROTOCOL_VERSION
from mcp_aggregator.core.exceptions import CLIENT_FAULT
from mcp_aggregator.core.registry import AggregatorRegistry
from mcp_aggregator.core.router import CallRouter
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

SUPPORTED_PROTOCOL_VERSIONS = ("2024-11-05", "2025-03-26", "2025-06-18")

LIST_CHANGED = "notifications/tools/list_changed"

Message = Dict[str, Any]


class ToolSurface:
    """JSON-RPC method dispatcher over the live registry."""

    def __init__(
        self,
        registry: AggregatorRegistry,
        router: CallRouter,
        server_name: str = "MCP Aggregator",
        server_version: str = __version__,
    ):
        self.registry = registry
        self.router = router
        self.server_name = server_name
        self.server_version = server_version

    async def handle_raw(self, raw: Union[str, bytes]) -> Optional[Union[Message, List[Message]]]:
        """Decode one frame and handle it."""
        try:
            message = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            return error_response(None, PARSE_ERROR, f"Parse error: {e}")
        return await self.handle(message)

    async def handle(self, message: Any) -> Optional[Union[Message, List[Message]]]:
        """
        Handle a decoded request, notification or batch.

        Returns:
            The response (a list for batches), or None when nothing is to
            be sent back
        """
        if isinstance(message, list):
            if not message:
                return error_response(None, INVALID_REQUEST, "Invalid Request: empty batch")
            responses = [r for r in [await self._handle_one(m) for m in message] if r is not None]
            return responses or None
        return await self._handle_one(message)

    async def _handle_one(self, message: Any) -> Optional[Message]:
        if (
            not isinstance(message, dict)
            or message.get("jsonrpc") != JSONRPC_VERSION
            or not isinstance(message.get("method"), str)
        ):
            request_id = message.get("id") if isinstance(message, dict) else None
            return error_response(request_id, INVALID_REQUEST, "Invalid Request")

        method = message["method"]
        params = message.get("params")

        if "id" not in message:
            logger.debug(f"Notification received: {method}")
            return None

        request_id = message["id"]
        if params is not None and not isinstance(params, dict):
            return error_response(request_id, INVALID_PARAMS, "params must be an object")
        params = params or {}

        if method == "initialize":
            return result_response(request_id, self._initialize(params))
        if method == "ping":
            return result_response(request_id, {})
        if method == "tools/list":
            return result_response(request_id, {"tools": self.tool_definitions()})
        if method == "tools/call":
            return await self._call_tool(request_id, params)

        return error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

    def _initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        requested = params.get("protocolVersion")
        client_info = params.get("clientInfo") or {}
        logger.info(f"Client connected: {client_info.get('name', 'unknown')} (protocol {requested})")

        return {
            "protocolVersion": requested if requested in SUPPORTED_PROTOCOL_VERSIONS else PROTOCOL_VERSION,
            "capabilities": {"tools": {"listChanged": True}},
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    def tool_definitions(self) -> List[Dict[str, Any]]:
        live = self.registry.live
        return [
            {
                "name": descriptor.qualified_name,
                "description": descriptor.description,
                "inputSchema": descriptor.input_schema,
            }
            for _, descriptor in sorted(live.tools.items())
        ]

    async def _call_tool(self, request_id: Any, params: Dict[str, Any]) -> Message:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            return error_response(request_id, INVALID_PARAMS, "tools/call requires a tool name")

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}

        outcome = await self.router.call(name, arguments)
        if outcome.success:
            return result_response(request_id, outcome.result)

        code = INVALID_PARAMS if outcome.error.fault == CLIENT_FAULT else INTERNAL_ERROR
        return error_response(request_id, code, outcome.error.message, data=outcome.error.model_dump())

    @staticmethod
    def list_changed_notification() -> Message:
        return {"jsonrpc": JSONRPC_VERSION, "method": LIST_CHANGED}


def result_response(request_id: Any, result: Any) -> Message:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(request_id: Any, code: int, message: str, data: Any = None) -> Message:
    error: Dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error}
