"""Interfaces layer - protocols and contracts."""

from .tools import ToolRouterProtocol, ToolStateProvider

__all__ = [
    "ToolRouterProtocol",
    "ToolStateProvider",
]
