"""MCP tools module.

This module provides:
- Transport connectors for process, socket and HTTP tool servers
- Server sessions with liveness probing
- The connection manager and the tool registry it maintains
"""

from .client import MCPConnectionManager
from .registry import ToolRegistry
from .session import ServerSession
from .transports import (
    HttpConnector,
    ProcessConnector,
    SocketConnector,
    TransportConnector,
    TransportHandle,
    default_connectors,
)

__all__ = [
    "MCPConnectionManager",
    "ToolRegistry",
    "ServerSession",
    "TransportConnector",
    "TransportHandle",
    "ProcessConnector",
    "SocketConnector",
    "HttpConnector",
    "default_connectors",
]
