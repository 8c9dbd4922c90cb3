"""Domain layer - pure models and errors."""

from .errors import (
    ConfigError,
    ConnectError,
    DomainError,
    ServerUnavailable,
    ToolCallError,
    UnknownTool,
)
from .mcp.models import ConnectionResult, ConnectionState, ServerStatus, Tool, ToolResult, make_tool_id

__all__ = [
    # Errors
    "DomainError",
    "ConfigError",
    "ConnectError",
    "ToolCallError",
    "ServerUnavailable",
    "UnknownTool",
    # MCP models
    "ConnectionResult",
    "ConnectionState",
    "ServerStatus",
    "Tool",
    "ToolResult",
    "make_tool_id",
]
