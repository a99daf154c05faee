"""
Call router.

Resolves a qualified tool name against the live registry, validates the
arguments and dispatches to the owning downstream server. Failures are
returned as structured ``CallResult`` values rather than raised.
"""

import json
import time
from typing import Any, Dict

from mcp_aggregator.core.exceptions import (
    AggregatorError, InvalidArguments, SERVICE_FAULT, ToolNotFound,
)
from mcp_aggregator.core.models import CallError, CallResult
from mcp_aggregator.core.registry import AggregatorRegistry
from mcp_aggregator.core.schema import validate_arguments
from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)


class CallRouter:
    """Routes tool calls to downstream servers."""

    def __init__(self, registry: AggregatorRegistry):
        self.registry = registry
        self.stats = {
            "calls": 0,
            "succeeded": 0,
            "client_faults": 0,
            "service_faults": 0,
        }

    async def call(self, qualified_name: str, arguments: Any) -> CallResult:
        """
        Route one call.

        Args:
            qualified_name: ``server/tool``
            arguments: JSON object of tool arguments

        Returns:
            CallResult carrying the downstream result verbatim, or a
            structured error classified as client or service fault
        """
        self.stats["calls"] += 1
        start_time = time.time()

        try:
            result = await self._dispatch(qualified_name, arguments)
        except AggregatorError as e:
            return self._failure(qualified_name, e)
        except Exception as e:
            logger.exception(f"Unexpected error routing {qualified_name}")
            return self._failure(qualified_name, e)

        self.stats["succeeded"] += 1
        logger.debug(f"Routed {qualified_name} in {(time.time() - start_time) * 1000:.1f}ms")
        return CallResult(success=True, tool=qualified_name, result=result)

    async def _dispatch(self, qualified_name: str, arguments: Any) -> Any:
        # Resolve against one generation; a swap mid-call does not affect this call
        registry = self.registry.live
        descriptor = registry.tools.get(qualified_name)
        if descriptor is None:
            raise ToolNotFound(
                f"Tool not found: {qualified_name}",
                error_code="TOOL_NOT_FOUND",
                details={"tool": qualified_name, "available_tools": registry.tool_names},
            )

        validate_arguments(descriptor.validator, arguments, qualified_name)
        return await descriptor.invoke(arguments)

    async def call_json(self, qualified_name: str, raw: str) -> CallResult:
        """
        Route a call whose arguments arrive as text.

        Text starting with ``{`` is parsed as a JSON object; any other text
        is sent as ``{"query": text}``.
        """
        try:
            arguments = parse_arguments(raw)
        except InvalidArguments as e:
            self.stats["calls"] += 1
            return self._failure(qualified_name, e)
        return await self.call(qualified_name, arguments)

    def _failure(self, qualified_name: str, error: Exception) -> CallResult:
        if isinstance(error, AggregatorError):
            call_error = CallError(
                type=error.__class__.__name__,
                message=error.message,
                fault=error.fault,
                details=error.details,
            )
        else:
            call_error = CallError(type=error.__class__.__name__, message=str(error), fault=SERVICE_FAULT)

        if call_error.fault == SERVICE_FAULT:
            self.stats["service_faults"] += 1
            logger.warning(f"Call to {qualified_name} failed: {call_error.message}")
        else:
            self.stats["client_faults"] += 1
            logger.info(f"Rejected call to {qualified_name}: {call_error.message}")

        return CallResult(success=False, tool=qualified_name, error=call_error)


def parse_arguments(raw: str) -> Dict[str, Any]:
    """
    Turn CLI-style argument text into an argument object.

    Raises:
        InvalidArguments: Text that looks like JSON but does not parse.
    """
    text = raw.strip()
    if not text.startswith("{"):
        return {"query": raw}
    try:
        return json.loads(text)
    except ValueError as e:
        raise InvalidArguments(
            f"Arguments are not valid JSON: {e}",
            error_code="INVALID_JSON",
        ) from e
