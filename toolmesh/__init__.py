"""
toolmesh - multi-server MCP client for chat and agent backends.

Connects an application to any number of independently configured MCP tool
servers, keeps their connection state current, and routes tool calls to the
server that owns each tool.

Example usage:
    from toolmesh import MCPConnectionManager

    manager = MCPConnectionManager()
    await manager.load_config_file("config/mcp.json")
    await manager.connect_all()
    result = await manager.call_tool("calculator:evaluate", {"expression": "2+2"})

CLI tools (after pip install):
    toolmesh status config/mcp.json
    toolmesh serve --port 8000
"""

from toolmesh.version import VERSION

__version__ = VERSION
__all__ = [
    "MCPConnectionManager",
    "VERSION",
    "__version__",
]


def __getattr__(name: str):
    """Lazy import to avoid loading fastmcp at module import time."""
    if name == "MCPConnectionManager":
        from toolmesh.modules.mcp_tools.client import MCPConnectionManager
        globals()["MCPConnectionManager"] = MCPConnectionManager  # Cache for subsequent accesses
        return MCPConnectionManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
