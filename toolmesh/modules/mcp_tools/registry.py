"""Tool registry: the derived catalog of tools across connected servers."""

import logging
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from toolmesh.core.log_sanitizer import sanitize_for_logging
from toolmesh.domain.errors import UnknownTool
from toolmesh.domain.mcp.models import Tool
from toolmesh.interfaces.tools import ToolStateProvider

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Read-only catalog keyed by namespaced tool id (``server:name``).

    Only the connection manager rebuilds it. Tools switched off by the
    ``ToolStateProvider`` stay in the catalog with ``enabled=False`` so they
    can be listed for administration, but they never resolve.
    """

    def __init__(self, tool_state_provider: Optional[ToolStateProvider] = None):
        self._tool_state_provider = tool_state_provider
        self._tools: Dict[str, Tool] = {}
        self._by_server: Dict[str, List[Tool]] = {}

    def _is_enabled(self, tool: Tool) -> bool:
        if self._tool_state_provider is None:
            return True
        try:
            return bool(self._tool_state_provider.is_tool_enabled(tool.server_name, tool.name))
        except Exception as e:
            logger.warning(
                "Tool state lookup failed for %s; treating it as enabled: %s",
                sanitize_for_logging(tool.id),
                e,
            )
            return True

    def rebuild(self, server_order: Sequence[str], tools_by_server: Mapping[str, Iterable[Tool]]) -> None:
        """Replace the catalog.

        ``server_order`` is the config declaration order; servers absent from
        ``tools_by_server`` (not connected) contribute nothing.
        """
        tools: Dict[str, Tool] = {}
        by_server: Dict[str, List[Tool]] = {}
        for server_name in server_order:
            server_tools = tools_by_server.get(server_name)
            if server_tools is None:
                continue
            ordered = []
            for tool in sorted(server_tools, key=lambda t: t.name):
                if tool.id in tools:
                    logger.warning("Duplicate tool id %s; keeping the first", sanitize_for_logging(tool.id))
                    continue
                enabled = self._is_enabled(tool)
                if enabled != tool.enabled:
                    tool = Tool(
                        id=tool.id,
                        server_name=tool.server_name,
                        name=tool.name,
                        description=tool.description,
                        input_schema=tool.input_schema,
                        enabled=enabled,
                    )
                tools[tool.id] = tool
                ordered.append(tool)
            by_server[server_name] = ordered

        self._tools = tools
        self._by_server = by_server
        logger.debug("Tool registry rebuilt: %d tools across %d servers", len(tools), len(by_server))

    def list(self, include_disabled: bool = False) -> List[Tool]:
        """All tools, by server declaration order then tool name."""
        return [t for tools in self._by_server.values() for t in tools if include_disabled or t.enabled]

    def for_server(self, server_name: str, include_disabled: bool = False) -> List[Tool]:
        return [t for t in self._by_server.get(server_name, []) if include_disabled or t.enabled]

    def count_for(self, server_name: str) -> int:
        return len(self.for_server(server_name))

    def get(self, tool_id: str) -> Optional[Tool]:
        tool = self._tools.get(tool_id)
        if tool is None or not tool.enabled:
            return None
        return tool

    def resolve(self, tool_id: str) -> Tuple[str, str]:
        """Map a tool id to ``(server_name, bare_name)`` or raise ``UnknownTool``."""
        tool = self.get(tool_id)
        if tool is None:
            raise UnknownTool(tool_id)
        return tool.server_name, tool.name

    def server_names(self) -> List[str]:
        return list(self._by_server)

    def __contains__(self, tool_id: object) -> bool:
        return isinstance(tool_id, str) and self.get(tool_id) is not None

    def __len__(self) -> int:
        return len(self.list())

    def __iter__(self) -> Iterator[Tool]:
        return iter(self.list())
