"""
Configuration management for MCP Aggregator.

Provides hierarchical configuration loading with validation using Pydantic.
Supports TOML configuration files and environment variable overrides
(``MCP_AGGREGATOR_*``, nested with ``__``).
"""

import os
from pathlib import Path
from typing import Any, List, Optional, Union

import toml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_aggregator.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_FILES = [
    "/etc/mcp-aggregator/config.toml",
    "~/.config/mcp-aggregator/config.toml",
    "./.mcp-aggregator.toml",
]


class LoggingConfig(BaseModel):
    """Logging configuration."""

    enabled: bool = Field(default=True, description="Enable logging completely")
    level: str = Field(default="INFO", description="File logging level")
    console_level: str = Field(default="WARNING", description="Console logging level")
    format_type: str = Field(default="text", description="Log format (text/json)")
    file: Optional[str] = Field(default=None, description="Log file path")
    enable_rich: bool = Field(default=True, description="Enable Rich console output")
    max_bytes: int = Field(default=10 * 1024 * 1024, description="Max log file size")
    backup_count: int = Field(default=5, description="Number of backup files")
    suppress_http: bool = Field(default=True, description="Suppress HTTP library logging")

    @field_validator("level", "console_level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate logging level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()

    @field_validator("format_type")
    @classmethod
    def validate_format_type(cls, v: str) -> str:
        """Validate format type."""
        if v not in ["text", "json"]:
            raise ValueError(f"Invalid format type: {v}")
        return v


class AggregatorConfig(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_AGGREGATOR_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    debug: bool = Field(default=False, description="Enable debug mode")
    data_dir: str = Field(
        default="~/.config/mcp-aggregator",
        description="Directory holding configuration.json and processes.json",
    )

    # Identity
    pool_name: str = Field(default="aggregator", description="Connection pool name")
    client_name: str = Field(default="mcp-aggregator", description="Client name sent downstream")
    client_version: str = Field(default="1.0.0", description="Client version sent downstream")
    server_name: str = Field(default="MCP Aggregator", description="Name of the exposed server")

    # Exposed surface
    transport: str = Field(default="stdio", description="Exposed transport (stdio/sse)")
    host: str = Field(default="127.0.0.1", description="SSE binding host")
    port: int = Field(default=9338, description="SSE binding port")
    sse_endpoint: str = Field(default="/sse", description="SSE stream path")

    # Timing (seconds)
    poll_interval: float = Field(default=5.0, description="Topology poll interval")
    directory_timeout: float = Field(default=10.0, description="Process directory call timeout")
    connect_timeout: float = Field(default=10.0, description="Downstream connect timeout")
    request_timeout: float = Field(default=60.0, description="Downstream request timeout")
    close_timeout: float = Field(default=2.0, description="Graceful close wait before destroy")
    idle_timeout: float = Field(default=600.0, description="Idle channel teardown")

    max_write_buffer: int = Field(default=1024 * 1024, description="Outbound buffer high-water mark")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("transport")
    @classmethod
    def validate_transport(cls, v: str) -> str:
        """Validate exposed transport."""
        v = v.lower()
        if v not in ["stdio", "sse"]:
            raise ValueError(f"Invalid transport: {v}")
        return v

    @field_validator(
        "poll_interval", "directory_timeout", "connect_timeout",
        "request_timeout", "close_timeout", "idle_timeout",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate interval settings."""
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive")
        return v

    def get_data_dir(self) -> Path:
        """Get data directory path."""
        return Path(os.path.expanduser(self.data_dir))

    def get_configuration_path(self) -> Path:
        """Path of the installed-server configuration store."""
        return self.get_data_dir() / "configuration.json"

    def get_process_state_path(self) -> Path:
        """Path of the supervisor's process state file."""
        return self.get_data_dir() / "processes.json"

    def get_log_file(self) -> Optional[Path]:
        """Get log file path."""
        if self.logging.file:
            log_path = Path(os.path.expanduser(self.logging.file))
            if not log_path.is_absolute():
                log_path = self.get_data_dir() / log_path
            return log_path
        return None


class ConfigManager:
    """Configuration manager with hierarchical loading."""

    def __init__(self):
        self._config: Optional[AggregatorConfig] = None

    def load_config(
        self,
        config_files: Optional[List[Union[str, Path]]] = None,
        **overrides: Any,
    ) -> AggregatorConfig:
        """
        Load configuration from multiple sources.

        Later files override earlier ones; explicit overrides win over files.
        Environment variables are applied by pydantic-settings for any field
        not given explicitly.

        Args:
            config_files: List of configuration files to load
            **overrides: Configuration overrides

        Returns:
            Loaded configuration
        """
        if self._config is not None and not config_files and not overrides:
            return self._config

        if config_files is None:
            config_files = DEFAULT_CONFIG_FILES

        config_data: dict = {}

        for config_file in config_files:
            file_path = Path(os.path.expanduser(str(config_file)))
            if file_path.exists():
                try:
                    file_data = toml.load(file_path)
                    config_data.update(file_data)
                    logger.debug(f"Loaded configuration from {file_path}")
                except (toml.TomlDecodeError, OSError) as e:
                    logger.warning(f"Failed to load config from {file_path}: {e}")

        config_data.update({k: v for k, v in overrides.items() if v is not None})

        self._config = AggregatorConfig(**config_data)
        return self._config

    def get_config(self) -> AggregatorConfig:
        """Get current configuration."""
        if self._config is None:
            return self.load_config()
        return self._config

    def reload_config(self, **overrides: Any) -> AggregatorConfig:
        """Reload configuration."""
        self._config = None
        return self.load_config(**overrides)


# Global configuration manager (CLI entry points only; the core takes an explicit config)
_config_manager = ConfigManager()

# Convenience functions
load_config = _config_manager.load_config
get_config = _config_manager.get_config
reload_config = _config_manager.reload_config
