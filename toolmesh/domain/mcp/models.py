"""Domain models for MCP server connections and tools."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

TOOL_ID_SEPARATOR = ":"


def make_tool_id(server_name: str, tool_name: str) -> str:
    """Build the globally unique tool identifier, e.g. ``("A", "search") -> "A:search"``."""
    return f"{server_name}{TOOL_ID_SEPARATOR}{tool_name}"


class ConnectionState(Enum):
    """Connection state of a single configured server."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    RECONNECTING = "reconnecting"


@dataclass
class ServerStatus:
    """Current status of one configured server.

    ``last_error`` is kept after a later successful reconnect is attempted so
    operators can still see why a server went down; it is cleared only when
    the server reaches ``connected``.
    """
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_error: Optional[str] = None
    tool_count: int = 0
    retry_count: int = 0
    retries_exhausted: bool = False
    enabled: bool = True
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the status boundary shape."""
        data: Dict[str, Any] = {
            "status": self.state.value,
            "toolCount": self.tool_count,
        }
        if self.last_error is not None:
            data["lastError"] = self.last_error
        if self.retry_count:
            data["retryCount"] = self.retry_count
        if self.retries_exhausted:
            data["retriesExhausted"] = True
        if not self.enabled:
            data["enabled"] = False
        return data


@dataclass(frozen=True)
class Tool:
    """A tool exposed by one connected server."""
    id: str
    server_name: str
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "server": self.server_name,
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
            "enabled": self.enabled,
        }

    def to_function_schema(self) -> Dict[str, Any]:
        """Function-calling schema for the LLM layer."""
        return {
            "type": "function",
            "function": {
                "name": self.id,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ConnectionResult:
    """Outcome of one connection attempt."""
    server_name: str
    success: bool
    elapsed_ms: float
    error: Optional[str] = None
    tool_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data: Dict[str, Any] = {
            "server": self.server_name,
            "success": self.success,
            "elapsedMs": round(self.elapsed_ms, 1),
            "toolCount": self.tool_count,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ToolResult:
    """Normalized result of a successful tool call."""
    tool_id: str
    content: List[Dict[str, Any]] = field(default_factory=list)
    structured_content: Optional[Dict[str, Any]] = None
    elapsed_ms: float = 0.0

    @property
    def text(self) -> str:
        """Concatenated text blocks, for callers that only want prose."""
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data: Dict[str, Any] = {
            "toolId": self.tool_id,
            "content": self.content,
            "elapsedMs": round(self.elapsed_ms, 1),
        }
        if self.structured_content is not None:
            data["structuredContent"] = self.structured_content
        return data
