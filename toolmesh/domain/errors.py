"""Domain-level errors and exceptions."""

from typing import List, Optional


class DomainError(Exception):
    """Base domain error."""
    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigError(DomainError):
    """One or more server configuration entries are invalid.

    ``errors`` holds one human-readable line per problem, across every
    invalid entry, so the whole configuration can be fixed in one pass.
    """
    def __init__(self, errors: List[str], message: Optional[str] = None):
        self.errors = list(errors)
        if message is None:
            message = f"{len(self.errors)} invalid server config entr{'y' if len(self.errors) == 1 else 'ies'}: " + "; ".join(self.errors)
        super().__init__(message, code="config_error")


class ConnectError(DomainError):
    """A transport could not establish a session (timeout, refused, handshake failure)."""
    def __init__(self, server_name: str, message: str, code: str = "connect_failed"):
        super().__init__(message, code=code)
        self.server_name = server_name


class ToolCallError(DomainError):
    """A connected server failed to execute a tool call."""
    def __init__(self, tool_id: str, message: str, code: str = "tool_call_failed"):
        super().__init__(message, code=code)
        self.tool_id = tool_id


class ServerUnavailable(DomainError):
    """The server owning a tool is not currently connected."""
    def __init__(self, server_name: str, message: Optional[str] = None, retryable: bool = True):
        super().__init__(message or f"Server '{server_name}' is not connected", code="server_unavailable")
        self.server_name = server_name
        self.retryable = retryable


class UnknownTool(DomainError):
    """No tool with the given identifier is in the registry."""
    def __init__(self, tool_id: str):
        super().__init__(f"Unknown tool: {tool_id}", code="unknown_tool")
        self.tool_id = tool_id
