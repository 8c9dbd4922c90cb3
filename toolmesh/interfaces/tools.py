"""Tools interface protocols."""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from toolmesh.domain.mcp.models import Tool


@runtime_checkable
class ToolStateProvider(Protocol):
    """Read-only view of the tool enable/disable flags kept by the storage layer.

    The connection manager only ever reads from this; persisting the flags is
    the storage collaborator's job.
    """

    def is_tool_enabled(self, server_name: str, tool_name: str) -> bool:
        """Whether the given server-local tool should be exposed."""
        ...


@runtime_checkable
class ToolRouterProtocol(Protocol):
    """Protocol the agent/chat layer uses to discover and invoke tools."""

    def list_tools(self, server_name: Optional[str] = None) -> List[Tool]:
        """List the tools currently available."""
        ...

    def get_tools_schema(self, tool_ids: List[str]) -> List[Dict[str, Any]]:
        """Get function-calling schemas for the given tool ids."""
        ...

    async def call_tool(self, tool_id: str, arguments: Dict[str, Any], caller: Optional[str] = None) -> Any:
        """Invoke a tool by its namespaced id."""
        ...
