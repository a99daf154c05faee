"""
Exception classes for MCP Aggregator.

Every error carries a ``fault`` classification so boundary layers (the
exposed tool surface, HTTP, CLI) can tell a caller mistake ("client") from
a downstream or infrastructure problem ("service").
"""

from typing import Any, Dict, Optional

CLIENT_FAULT = "client"
SERVICE_FAULT = "service"


class AggregatorError(Exception):
    """Base exception for all MCP Aggregator errors."""

    fault: str = SERVICE_FAULT

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize AggregatorError.

        Args:
            message: Error message
            error_code: Optional error code for categorization
            details: Optional additional error details
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def __str__(self) -> str:
        """String representation of the error."""
        if self.error_code:
            return f"[{self.error_code}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "fault": self.fault,
            "details": self.details,
        }


class ConfigError(AggregatorError):
    """Configuration store errors."""
    pass


class DirectoryError(AggregatorError):
    """Process directory could not be queried."""
    pass


class ConnectError(AggregatorError):
    """A downstream connection could not be established."""
    pass


class ConnectionBrokenError(AggregatorError):
    """An established connection died mid-use (remote end closed)."""
    pass


class RequestInterruptedError(ConnectionBrokenError):
    """The connection died after a request was written, before its response."""
    pass


class NotWritableError(AggregatorError):
    """The channel is not writable (closing, destroyed or backed up)."""
    pass


class RequestTimeoutError(AggregatorError):
    """A downstream request did not answer in time."""
    pass


class RemoteError(AggregatorError):
    """A downstream server answered a request with a JSON-RPC error."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message, error_code="REMOTE_ERROR", details={"code": code, "data": data})
        self.code = code
        self.data = data


class ServerNotRunning(AggregatorError):
    """Requested server is not Online according to the process directory."""
    pass


class DiscoveryError(AggregatorError):
    """Tool discovery against a downstream server failed."""
    pass


class SchemaTranslationError(AggregatorError):
    """A declared tool input schema could not be translated."""
    pass


class ToolNotFound(AggregatorError):
    """No such qualified tool in the live registry."""

    fault = CLIENT_FAULT


class InvalidArguments(AggregatorError):
    """Arguments failed schema validation or are malformed JSON."""

    fault = CLIENT_FAULT


class DownstreamInvocationError(AggregatorError):
    """The downstream tool itself reported a failure."""
    pass
