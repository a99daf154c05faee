"""
Data models for MCP Aggregator.

Pydantic models for data that crosses the boundary with external
collaborators (process directory, configuration store, callers of the
router), and dataclasses for the in-process runtime objects owned by the
connection manager and the registry.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import (
    TYPE_CHECKING, Any, Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Type,
)

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from mcp_aggregator.core.client import ProtocolClient
    from mcp_aggregator.core.schema import ParameterSchema
    from mcp_aggregator.core.transport.base import Transport


class Liveness(str, Enum):
    """Downstream server liveness as reported by the process directory."""

    ONLINE = "online"
    OFFLINE = "offline"


class RegistryState(str, Enum):
    """Lifecycle of the aggregator registry."""

    EMPTY = "empty"
    POPULATING = "populating"
    LIVE = "live"
    RELOADING = "reloading"
    DRAINING = "draining"
    STOPPED = "stopped"


class DownstreamServer(BaseModel):
    """A downstream tool server as seen by the process directory."""

    name: str = Field(description="Unique server name, e.g. 'author/repo'")
    liveness: Liveness = Field(default=Liveness.OFFLINE, description="Current liveness")
    pid: Optional[int] = Field(default=None, description="Process ID if running")
    memory: Optional[str] = Field(default=None, description="Formatted memory usage")
    cpu: Optional[str] = Field(default=None, description="Formatted CPU usage")
    uptime: Optional[str] = Field(default=None, description="Formatted uptime")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate server name."""
        if not v.strip():
            raise ValueError("Server name cannot be empty")
        return v.strip()

    @property
    def is_online(self) -> bool:
        return self.liveness == Liveness.ONLINE

    def __str__(self) -> str:
        return f"{self.name} ({self.liveness.value})"


class LaunchParams(BaseModel):
    """How to reach or start a downstream server."""

    command: str = Field(description="Executable to run")
    args: List[str] = Field(default_factory=list, description="Command arguments")
    working_directory: Optional[str] = Field(default=None, description="Working directory")
    environment: Dict[str, str] = Field(default_factory=dict, description="Environment variables")
    socket_path: Optional[str] = Field(default=None, description="Local socket of a running server")


class CallError(BaseModel):
    """Structured failure returned by the call router."""

    type: str = Field(description="Error class name")
    message: str = Field(description="Human readable message")
    fault: str = Field(description="'client' or 'service'")
    details: Dict[str, Any] = Field(default_factory=dict)


class CallResult(BaseModel):
    """Outcome of routing one tool call."""

    success: bool
    tool: str = Field(description="Qualified tool name that was requested")
    result: Optional[Any] = Field(default=None, description="Downstream result, verbatim")
    error: Optional[CallError] = None

    @property
    def is_client_fault(self) -> bool:
        return self.error is not None and self.error.fault == "client"


@dataclass
class Connection:
    """A pooled client + transport pair for one downstream server."""

    server_name: str
    client: "ProtocolClient"
    transport: "Transport"
    created_at: datetime = field(default_factory=datetime.now)

    def is_alive(self) -> bool:
        """Cheap check; never performs a round trip."""
        return not self.client.closed and self.transport.test_liveness()

    async def close(self) -> None:
        """Close client then transport. Never raises."""
        await self.client.close()
        await self.transport.close()


@dataclass
class ToolDescriptor:
    """One tool exposed by the aggregator."""

    qualified_name: str
    server_name: str
    tool_name: str
    description: str
    parameter_schema: "ParameterSchema"
    validator: Type[BaseModel]
    invoke: Callable[[Dict[str, Any]], Awaitable[Any]]
    input_schema: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AggregatedRegistry:
    """One immutable generation of the aggregated tool set."""

    generation: int
    tools: Mapping[str, ToolDescriptor]
    source_server_names: FrozenSet[str]
    failed_servers: FrozenSet[str] = frozenset()
    built_at: datetime = field(default_factory=datetime.now)

    @classmethod
    def empty(cls) -> "AggregatedRegistry":
        return cls(generation=0, tools=MappingProxyType({}), source_server_names=frozenset())

    @property
    def tool_names(self) -> List[str]:
        return sorted(self.tools)

    def summary(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "tool_count": len(self.tools),
            "servers": sorted(self.source_server_names),
            "failed_servers": sorted(self.failed_servers),
            "built_at": self.built_at.isoformat(),
        }
