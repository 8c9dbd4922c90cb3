"""Transport connectors: open one physical connection to one tool server.

One connector per transport kind (process, socket, http). Every connector
produces a ``TransportHandle`` wrapping a connected FastMCP ``Client``. The
client context is entered and exited by a dedicated runner task, so a handle
can be opened by one task and closed by another without tripping anyio's
cancel-scope rules, and a failed or timed-out open never leaves a child
process or socket behind.
"""

import asyncio
import contextlib
import logging
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import anyio
import mcp.types as types
from fastmcp import Client
from fastmcp.client.transports import (
    ClientTransport,
    SSETransport,
    StdioTransport,
    StreamableHttpTransport,
)
from fastmcp.client.transports.base import TransportOptions
from mcp import ClientSession
from mcp.client.stdio import get_default_environment
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from websockets.asyncio.client import connect as ws_connect
from websockets.typing import Subprotocol

from toolmesh.core.log_sanitizer import sanitize_for_logging
from toolmesh.domain.errors import ConnectError
from toolmesh.modules.config.config_manager import (
    HttpServerConfig,
    ProcessServerConfig,
    SocketServerConfig,
    resolve_env_var,
)

logger = logging.getLogger(__name__)

# Mapping from MCP log levels to Python logging levels
MCP_TO_PYTHON_LOG_LEVEL = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "notice": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "alert": logging.CRITICAL,
    "critical": logging.CRITICAL,
    "emergency": logging.CRITICAL,
}

# Grace period for a runner task to exit its client context on close
_CLOSE_TIMEOUT = 5.0


def describe_error(exc: BaseException) -> str:
    """One-line description of a transport failure.

    Unwraps exception groups raised by anyio task groups so the root cause
    (e.g. ``ConnectError: All connection attempts failed``) is reported
    instead of "unhandled errors in a TaskGroup".
    """
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    message = str(exc)
    if not message:
        # EndOfStream, ClosedResourceError, CancelledError carry no text
        return f"{type(exc).__name__}: connection closed or timed out"
    return f"{type(exc).__name__}: {message}"


def create_log_handler(server_name: str, min_level: int = logging.INFO):
    """Create a handler that re-logs messages sent by an MCP server.

    Server INFO chatter is demoted to DEBUG; warnings and errors surface at
    their own level.
    """
    safe_server_name = sanitize_for_logging(server_name)

    async def log_handler(message) -> None:
        try:
            if hasattr(message, "level"):
                log_level_str = str(message.level).lower()
                log_data = message.data if hasattr(message, "data") else {}
            else:
                log_level_str = message.get("level", "info").lower()
                log_data = message.get("data", {})

            msg = log_data.get("msg", "") if isinstance(log_data, dict) else str(log_data)
            python_log_level = MCP_TO_PYTHON_LOG_LEVEL.get(log_level_str, logging.INFO)
            if python_log_level < min_level:
                return

            backend_log_level = python_log_level if python_log_level >= logging.WARNING else logging.DEBUG
            logger.log(
                backend_log_level,
                f"[MCP:{safe_server_name}] {sanitize_for_logging(msg)}",
                extra={"mcp_server": server_name},
            )
        except Exception as e:
            logger.warning(f"Error handling log from MCP server {safe_server_name}: {e}")

    return log_handler


@contextlib.asynccontextmanager
async def websocket_streams(url: str, headers: Optional[Dict[str, str]] = None):
    """Open a WebSocket with the ``mcp`` subprotocol and yield ``(read_stream, write_stream)``.

    Each text frame carries one JSON-RPC message. Frames that fail to parse
    are delivered to the reader as the validation exception.
    """
    read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
    write_stream, write_stream_reader = anyio.create_memory_object_stream(0)

    async with ws_connect(url, subprotocols=[Subprotocol("mcp")], additional_headers=headers) as ws:

        async def ws_reader():
            async with read_stream_writer:
                async for raw_text in ws:
                    try:
                        message = types.jsonrpc_message_adapter.validate_json(raw_text, by_name=False)
                    except ValidationError as exc:
                        await read_stream_writer.send(exc)
                        continue
                    await read_stream_writer.send(SessionMessage(message))

        async def ws_writer():
            async with write_stream_reader:
                async for session_message in write_stream_reader:
                    await ws.send(session_message.message.model_dump_json(by_alias=True, exclude_unset=True))

        async with anyio.create_task_group() as tg:
            tg.start_soon(ws_reader)
            tg.start_soon(ws_writer)
            try:
                yield read_stream, write_stream
            finally:
                tg.cancel_scope.cancel()


class WebSocketTransport(ClientTransport):
    """FastMCP client transport for servers reached over a WebSocket."""

    # WebSocket servers only speak the initialize handshake
    legacy_only = True

    def __init__(self, url: str, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.headers = headers or {}

    @contextlib.asynccontextmanager
    async def connect_session(
        self,
        *,
        transport_options: Optional[TransportOptions] = None,
        **session_kwargs: Any,
    ) -> AsyncIterator[ClientSession]:
        options = transport_options or TransportOptions()
        async with websocket_streams(self.url, dict(self.headers) or None) as (read_stream, write_stream):
            async with options.session_class(read_stream, write_stream, **session_kwargs) as session:
                yield session

    def __repr__(self) -> str:
        return f"<WebSocketTransport(url='{self.url}')>"


class TransportHandle:
    """A live connection: one FastMCP client held open by a runner task."""

    def __init__(self, server_name: str, client: Client):
        self.server_name = server_name
        self.client = client
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._runner: Optional[asyncio.Task] = None
        self._error: Optional[BaseException] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def error(self) -> Optional[BaseException]:
        """Exception that ended the runner, if any."""
        return self._error

    async def _run(self) -> None:
        try:
            async with self.client:
                self._ready.set()
                await self._stop.wait()
        except Exception as e:
            self._error = e
            logger.debug(
                "Transport runner for '%s' ended with %s",
                sanitize_for_logging(self.server_name),
                describe_error(e),
            )
        finally:
            with contextlib.suppress(Exception):
                await self.client.transport.close()

    async def start(self, timeout: float) -> None:
        """Spawn/dial and handshake; raise ``ConnectError`` on failure or timeout.

        Whatever happens, a failed start leaves nothing running.
        """
        self._runner = asyncio.create_task(self._run(), name=f"mcp-transport-{self.server_name}")
        ready_waiter = asyncio.create_task(self._ready.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_waiter, self._runner},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            # Reap the runner (and any child process) before propagating
            await self._abort()
            raise
        finally:
            ready_waiter.cancel()

        if self._ready.is_set() and not self._runner.done():
            return

        await self._abort()
        if not done:
            raise ConnectError(
                self.server_name,
                f"Connection to '{self.server_name}' timed out after {timeout:g}s",
                code="connect_timeout",
            )
        reason = describe_error(self._error) if self._error else "transport closed during handshake"
        raise ConnectError(self.server_name, f"Connection to '{self.server_name}' failed: {reason}")

    async def _abort(self) -> None:
        self._closed = True
        self._stop.set()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass

    def is_alive(self) -> bool:
        """Transport-level liveness only; see ``ServerSession.ping`` for protocol liveness."""
        return (
            not self._closed
            and self._ready.is_set()
            and self._runner is not None
            and not self._runner.done()
            and self.client.is_connected()
        )

    async def close(self) -> None:
        """Exit the client context (terminating a child process / closing a socket)."""
        self._closed = True
        self._stop.set()
        runner = self._runner
        if runner is None or runner.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(
                "Transport for '%s' did not close within %ss; cancelling",
                sanitize_for_logging(self.server_name),
                _CLOSE_TIMEOUT,
            )
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass


class TransportConnector(ABC):
    """Opens, probes and closes connections for one transport kind."""

    kind: str = ""
    # Whether the transport carries concurrent requests on one connection
    multiplexed: bool = False

    def __init__(self, min_log_level: int = logging.INFO):
        self.min_log_level = min_log_level

    @abstractmethod
    def build_transport(self, server_name: str, config: Any) -> ClientTransport:
        """Build the FastMCP transport for a config; raise ``ConnectError`` if it cannot be built."""

    def build_client(self, server_name: str, config: Any) -> Client:
        transport = self.build_transport(server_name, config)
        return Client(transport, log_handler=create_log_handler(server_name, self.min_log_level))

    async def open(self, server_name: str, config: Any, timeout: float) -> TransportHandle:
        """Open a live connection or raise ``ConnectError``."""
        logger.debug(
            "Opening %s transport for '%s' -> %s",
            self.kind,
            sanitize_for_logging(server_name),
            sanitize_for_logging(config.target),
        )
        handle = TransportHandle(server_name, self.build_client(server_name, config))
        await handle.start(timeout)
        return handle

    def is_alive(self, handle: TransportHandle) -> bool:
        return handle.is_alive()

    async def close(self, handle: TransportHandle) -> None:
        await handle.close()


def _resolve_mapping(server_name: str, values: Optional[Dict[str, str]], what: str) -> Optional[Dict[str, str]]:
    if values is None:
        return None
    resolved = {}
    for key, value in values.items():
        try:
            resolved[key] = resolve_env_var(value)
        except ValueError as e:
            raise ConnectError(server_name, f"Failed to resolve {what} {key} for '{server_name}': {e}", code="config_env")
    return resolved


class ProcessConnector(TransportConnector):
    """Spawns the server as a child process and talks to it over stdio."""

    kind = "process"

    def build_transport(self, server_name: str, config: ProcessServerConfig) -> ClientTransport:
        command = config.command
        # Run python servers under the same interpreter as this process
        if command in {"python", "python3"}:
            command = sys.executable

        env = _resolve_mapping(server_name, config.env, "env var")
        if env is not None:
            # A child given only its own vars would lose PATH/HOME
            env = {**get_default_environment(), **env}

        cwd = None
        if config.cwd:
            cwd_path = Path(config.cwd).expanduser().resolve()
            if not cwd_path.is_dir():
                raise ConnectError(
                    server_name,
                    f"Working directory does not exist for '{server_name}': {cwd_path}",
                    code="config_cwd",
                )
            cwd = str(cwd_path)

        return StdioTransport(
            command=command,
            args=list(config.args),
            env=env,
            cwd=cwd,
            keep_alive=False,
        )


class SocketConnector(TransportConnector):
    """Dials a WebSocket endpoint."""

    kind = "socket"

    def build_transport(self, server_name: str, config: SocketServerConfig) -> ClientTransport:
        headers = _resolve_mapping(server_name, config.headers, "header")
        return WebSocketTransport(config.url, headers=headers)


class HttpConnector(TransportConnector):
    """Connects over Streamable HTTP or SSE."""

    kind = "http"
    multiplexed = True

    def build_transport(self, server_name: str, config: HttpServerConfig) -> ClientTransport:
        headers = _resolve_mapping(server_name, config.headers, "header") or {}
        if config.api_key:
            try:
                token = resolve_env_var(config.api_key)
            except ValueError as e:
                raise ConnectError(server_name, f"Failed to resolve apiKey for '{server_name}': {e}", code="config_env")
            headers.setdefault("Authorization", f"Bearer {token}")

        if config.protocol == "sse":
            return SSETransport(config.url, headers=headers or None)
        return StreamableHttpTransport(config.url, headers=headers or None)


def default_connectors(min_log_level: int = logging.INFO) -> Dict[str, TransportConnector]:
    """One connector instance per transport kind."""
    return {
        connector.kind: connector
        for connector in (
            ProcessConnector(min_log_level),
            SocketConnector(min_log_level),
            HttpConnector(min_log_level),
        )
    }
