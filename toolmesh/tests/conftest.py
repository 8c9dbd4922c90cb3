import asyncio
import sys
from pathlib import Path
from typing import Dict, Iterable, Optional

import pytest
from fastmcp import FastMCP
from fastmcp.client.transports import FastMCPTransport

# Ensure the project root is on sys.path for absolute imports like 'toolmesh.*'
project_root = Path(__file__).resolve().parents[2]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from toolmesh.domain.errors import ConnectError  # noqa: E402
from toolmesh.modules.config import AppSettings  # noqa: E402
from toolmesh.modules.mcp_tools.transports import TransportConnector, TransportHandle  # noqa: E402

ECHO_SERVER = project_root / "toolmesh" / "mcp" / "echo_demo" / "main.py"


def make_server(name: str) -> FastMCP:
    """In-process tool server whose tool outputs carry the server name."""
    mcp = FastMCP(name)

    @mcp.tool
    def echo(text: str) -> str:
        """Echo the text back, prefixed with the server name."""
        return f"{name}:{text}"

    @mcp.tool
    def search(query: str) -> str:
        """Pretend to search."""
        return f"{name} results for {query}"

    @mcp.tool
    async def slow(seconds: float = 5.0) -> str:
        """Sleep before answering."""
        await asyncio.sleep(seconds)
        return "done"

    @mcp.tool
    def boom() -> str:
        """Always fails."""
        raise ValueError("kaboom")

    return mcp


class InMemoryConnector(TransportConnector):
    """Connector that talks to in-process FastMCP servers.

    Server names listed in ``fail`` refuse to connect; names added to ``dead``
    report a dead transport until they are opened again.
    """

    kind = "process"

    def __init__(self, servers: Dict[str, FastMCP], fail: Optional[Iterable[str]] = None, open_delay: float = 0.0):
        super().__init__()
        self.servers = servers
        self.fail = set(fail or ())
        self.dead = set()
        self.open_delay = open_delay
        self.open_calls = []
        self.handles = []

    def build_transport(self, server_name, config):
        return FastMCPTransport(self.servers[server_name])

    async def open(self, server_name, config, timeout) -> TransportHandle:
        self.open_calls.append(server_name)
        if self.open_delay:
            await asyncio.sleep(self.open_delay)
        if server_name in self.fail:
            raise ConnectError(server_name, f"Connection to '{server_name}' failed: connection refused")
        self.dead.discard(server_name)
        handle = await super().open(server_name, config, timeout)
        self.handles.append(handle)
        return handle

    def is_alive(self, handle: TransportHandle) -> bool:
        return handle.server_name not in self.dead and super().is_alive(handle)


@pytest.fixture
def settings():
    return AppSettings(
        mcp_connect_timeout=5.0,
        mcp_discovery_timeout=5.0,
        mcp_call_timeout=5.0,
        mcp_ping_timeout=1.0,
        mcp_health_check_interval=3600.0,
        mcp_max_retries=3,
        mcp_reconnect_interval=0.01,
        mcp_reconnect_max_interval=0.05,
        mcp_reconnect_backoff_multiplier=2.0,
        feature_mcp_auto_reconnect_enabled=False,
    )


@pytest.fixture
def server_factory():
    return make_server


@pytest.fixture
def connector_factory():
    """Build an ``InMemoryConnector`` serving one in-process server per name."""

    def factory(*names, fail=None, open_delay=0.0):
        return InMemoryConnector({n: make_server(n) for n in names}, fail=fail, open_delay=open_delay)

    return factory


@pytest.fixture
def echo_server_path():
    return ECHO_SERVER
