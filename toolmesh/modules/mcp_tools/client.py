"""Connection manager for a set of independently configured MCP tool servers."""

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel

from toolmesh.core.log_sanitizer import sanitize_for_logging, summarize_server_config_for_logging
from toolmesh.core.metrics_logger import log_metric
from toolmesh.domain.errors import (
    ConnectError,
    DomainError,
    ServerUnavailable,
    ToolCallError,
    UnknownTool,
)
from toolmesh.domain.mcp.models import (
    TOOL_ID_SEPARATOR,
    ConnectionResult,
    ConnectionState,
    ServerStatus,
    Tool,
    ToolResult,
)
from toolmesh.interfaces.tools import ToolStateProvider
from toolmesh.modules.config import AppSettings, config_manager, parse_servers_config
from toolmesh.modules.mcp_tools.registry import ToolRegistry
from toolmesh.modules.mcp_tools.session import ServerSession
from toolmesh.modules.mcp_tools.transports import (
    MCP_TO_PYTHON_LOG_LEVEL,
    TransportConnector,
    default_connectors,
    describe_error,
)

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class _ServerEntry:
    config: Any
    status: ServerStatus
    lock: asyncio.Lock = dataclasses.field(default_factory=asyncio.Lock)
    session: Optional[ServerSession] = None
    tools: List[Tool] = dataclasses.field(default_factory=list)
    reconnect_task: Optional[asyncio.Task] = None
    connect_task: Optional[asyncio.Task] = None


class MCPConnectionManager:
    """Owns the map server name -> (config, session, status) and the tool registry.

    Construct one per application and pass it to whatever needs it. Only the
    manager mutates server state; every transition for one server runs under
    that server's lock, and at most one session is live per server.
    """

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        connectors: Optional[Mapping[str, TransportConnector]] = None,
        tool_state_provider: Optional[ToolStateProvider] = None,
    ):
        self.settings = settings or config_manager.app_settings
        self._connectors: Dict[str, TransportConnector] = dict(
            connectors if connectors is not None else default_connectors(self._get_min_log_level())
        )
        self._servers: Dict[str, _ServerEntry] = {}
        self._registry = ToolRegistry(tool_state_provider)
        self._connect_semaphore = asyncio.Semaphore(self.settings.mcp_max_parallel_connects)
        self.last_connection_results: List[ConnectionResult] = []
        self._health_task: Optional[asyncio.Task] = None
        self._health_running = False
        self._closing = False

    def _get_min_log_level(self) -> int:
        """Minimum level for log messages forwarded by servers, from LOG_LEVEL."""
        level = getattr(logging, str(self.settings.log_level).upper(), None)
        if isinstance(level, int):
            return level
        return MCP_TO_PYTHON_LOG_LEVEL.get(str(self.settings.log_level).lower(), logging.INFO)

    # ------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------
    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def server_names(self) -> List[str]:
        return list(self._servers)

    def get_server_config(self, server_name: str) -> Optional[Any]:
        entry = self._servers.get(server_name)
        return entry.config if entry else None

    def get_session(self, server_name: str) -> Optional[ServerSession]:
        entry = self._servers.get(server_name)
        return entry.session if entry else None

    def get_connection_status(self) -> Dict[str, ServerStatus]:
        """Snapshot of every configured server's status. Never blocks, never raises."""
        return {name: dataclasses.replace(entry.status) for name, entry in list(self._servers.items())}

    def status_snapshot(self) -> Dict[str, Any]:
        """Status in its boundary shape: ``{servers: {...}, lastConnectionResults: [...]}``."""
        return {
            "servers": {name: status.to_dict() for name, status in self.get_connection_status().items()},
            "lastConnectionResults": [r.to_dict() for r in self.last_connection_results],
        }

    # ------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------
    async def set_config(self, servers: Mapping[str, Any]) -> None:
        """Install a new server map.

        Removed servers are closed and dropped, changed servers are closed and
        reset to ``disconnected``, unchanged servers are left alone. Never
        connects. Raw dicts are validated first; on ``ConfigError`` nothing
        changes.
        """
        if not all(isinstance(c, BaseModel) for c in servers.values()):
            servers = parse_servers_config(servers)

        for name in [n for n in self._servers if n not in servers]:
            entry = self._servers[name]
            await self._cancel_reconnect(entry)
            await self._cancel_connect(entry)
            async with entry.lock:
                await self._close_session(name, entry)
                del self._servers[name]
            logger.info("Removed MCP server %s", sanitize_for_logging(name))

        updated: Dict[str, _ServerEntry] = {}
        for name, config in servers.items():
            entry = self._servers.get(name)
            if entry is None:
                entry = _ServerEntry(config=config, status=ServerStatus(enabled=config.enabled))
                logger.info(
                    "Added MCP server %s: %s",
                    sanitize_for_logging(name),
                    summarize_server_config_for_logging(config.to_log_dict()),
                )
            elif entry.config != config:
                await self._cancel_reconnect(entry)
                await self._cancel_connect(entry)
                async with entry.lock:
                    await self._close_session(name, entry)
                    entry.config = config
                    entry.status = ServerStatus(enabled=config.enabled)
                logger.info("MCP server %s config changed; reset to disconnected", sanitize_for_logging(name))
            updated[name] = entry

        self._servers = updated
        self._rebuild_registry()

    async def load_config_file(self, path: Union[str, Path]) -> None:
        """Read a JSON server config file and install it with ``set_config``."""
        await self.set_config(config_manager.read_servers_file(path))

    # ------------------------------------------------------------
    # Connecting
    # ------------------------------------------------------------
    def _connect_timeout(self, config: Any) -> float:
        if config.timeout_ms:
            return config.timeout_ms / 1000
        return self.settings.mcp_connect_timeout

    def _call_timeout(self, config: Any) -> float:
        if config.call_timeout_ms:
            return config.call_timeout_ms / 1000
        return self.settings.mcp_call_timeout

    def _set_state(self, entry: _ServerEntry, state: ConnectionState, **changes: Any) -> None:
        entry.status = dataclasses.replace(
            entry.status, state=state, updated_at=datetime.now(timezone.utc), **changes
        )

    async def _open_session(self, server_name: str, entry: _ServerEntry, reconnecting: bool = False) -> ConnectionResult:
        """Connect and discover tools for one server. Caller holds ``entry.lock``."""
        safe_server_name = sanitize_for_logging(server_name)
        config = entry.config
        start = time.perf_counter()
        self._set_state(entry, ConnectionState.RECONNECTING if reconnecting else ConnectionState.CONNECTING)

        error: Optional[str] = None
        session: Optional[ServerSession] = None
        tools: List[Tool] = []
        try:
            connector = self._connectors.get(config.transport)
            if connector is None:
                raise ConnectError(server_name, f"No connector for transport kind '{config.transport}'", code="config_transport")
            async with self._connect_semaphore:
                session = await ServerSession.open(
                    server_name,
                    config,
                    connector,
                    connect_timeout=self._connect_timeout(config),
                    call_timeout=self._call_timeout(config),
                    discovery_timeout=self.settings.mcp_discovery_timeout,
                    ping_timeout=self.settings.mcp_ping_timeout,
                    failure_threshold=self.settings.mcp_liveness_failure_threshold,
                    on_dead=self._handle_dead_session,
                )
                try:
                    tools = await session.list_tools()
                except BaseException:
                    await session.close()
                    session = None
                    raise
        except asyncio.CancelledError:
            self._set_state(entry, ConnectionState.DISCONNECTED)
            raise
        except DomainError as e:
            error = e.message
        except Exception as e:
            logger.error("Unexpected error connecting to %s: %s", safe_server_name, e, exc_info=True)
            error = describe_error(e)

        elapsed_ms = (time.perf_counter() - start) * 1000
        if error is not None:
            self._set_state(entry, ConnectionState.ERROR, last_error=error, tool_count=0)
            logger.warning("Failed to connect to MCP server %s: %s", safe_server_name, sanitize_for_logging(error))
            log_metric("mcp_connect", server=server_name, success=False, elapsed_ms=round(elapsed_ms))
            return ConnectionResult(server_name=server_name, success=False, elapsed_ms=elapsed_ms, error=error)

        entry.session = session
        entry.tools = tools
        self._set_state(
            entry,
            ConnectionState.CONNECTED,
            last_error=None,
            retry_count=0,
            retries_exhausted=False,
        )
        self._rebuild_registry()
        tool_count = entry.status.tool_count
        logger.info(
            "Connected to MCP server %s via %s in %.0fms (%d tools)",
            safe_server_name,
            session.transport_kind,
            elapsed_ms,
            tool_count,
        )
        log_metric("mcp_connect", server=server_name, success=True, elapsed_ms=round(elapsed_ms), tool_count=tool_count)
        return ConnectionResult(server_name=server_name, success=True, elapsed_ms=elapsed_ms, tool_count=tool_count)

    async def _connect_if_needed(self, server_name: str) -> Optional[ConnectionResult]:
        entry = self._servers.get(server_name)
        if entry is None or not entry.config.enabled:
            return None
        await self._cancel_reconnect(entry)
        async with entry.lock:
            if self._servers.get(server_name) is not entry:
                return None
            if entry.status.state not in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                return None
            self._set_state(entry, entry.status.state, retry_count=0, retries_exhausted=False)
            task = asyncio.create_task(self._open_session(server_name, entry), name=f"mcp-connect-{server_name}")
            entry.connect_task = task
            try:
                return await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if not task.cancelled() or (current is not None and current.cancelling()):
                    raise
                logger.info("Connection attempt for %s cancelled", sanitize_for_logging(server_name))
                return ConnectionResult(
                    server_name=server_name,
                    success=False,
                    elapsed_ms=0.0,
                    error="connection attempt cancelled",
                )
            finally:
                if entry.connect_task is task:
                    entry.connect_task = None

    async def connect_all(self) -> List[ConnectionResult]:
        """Connect every enabled server that is ``disconnected`` or in ``error``.

        Attempts run concurrently, bounded by MCP_MAX_PARALLEL_CONNECTS. A
        failure is captured in that server's result and status and never
        affects the others. Already connected servers are not touched and get
        no result. Returns once every attempt has settled.
        """
        targets = [
            name
            for name, entry in self._servers.items()
            if entry.config.enabled and entry.status.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR)
        ]
        if not targets:
            logger.debug("connect_all: nothing to connect")
            return []

        logger.info("Connecting %d MCP servers: %s", len(targets), [sanitize_for_logging(n) for n in targets])
        outcomes = await asyncio.gather(*(self._connect_if_needed(name) for name in targets), return_exceptions=True)

        results: List[ConnectionResult] = []
        for name, outcome in zip(targets, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Connection attempt for %s raised: %s", sanitize_for_logging(name), outcome)
                entry = self._servers.get(name)
                if entry is not None:
                    self._set_state(entry, ConnectionState.ERROR, last_error=describe_error(outcome))
                results.append(ConnectionResult(server_name=name, success=False, elapsed_ms=0.0, error=describe_error(outcome)))
            elif outcome is not None:
                results.append(outcome)

        self.last_connection_results = results
        succeeded = sum(1 for r in results if r.success)
        logger.info("connect_all finished: %d connected, %d failed", succeeded, len(results) - succeeded)

        if self.settings.feature_mcp_auto_reconnect_enabled:
            for result in results:
                if not result.success:
                    self._schedule_reconnect(result.server_name)
        return results

    async def connect_server(self, server_name: str) -> ConnectionResult:
        """Connect one server. A server that is already connected is reported as such."""
        entry = self._servers.get(server_name)
        if entry is None:
            raise ServerUnavailable(server_name, f"Server '{server_name}' is not configured", retryable=False)
        if not entry.config.enabled:
            raise ServerUnavailable(server_name, f"Server '{server_name}' is disabled", retryable=False)

        result = await self._connect_if_needed(server_name)
        if result is None:
            status = entry.status
            result = ConnectionResult(
                server_name=server_name,
                success=status.state == ConnectionState.CONNECTED,
                elapsed_ms=0.0,
                error=None if status.state == ConnectionState.CONNECTED else f"server is {status.state.value}",
                tool_count=status.tool_count,
            )
        elif not result.success and self.settings.feature_mcp_auto_reconnect_enabled:
            self._schedule_reconnect(server_name)
        return result

    # ------------------------------------------------------------
    # Disconnecting
    # ------------------------------------------------------------
    async def _close_session(self, server_name: str, entry: _ServerEntry) -> None:
        """Close the live session, if any. Caller holds ``entry.lock``."""
        session = entry.session
        entry.session = None
        entry.tools = []
        if session is not None:
            await session.close()
            logger.info("Closed session for MCP server %s", sanitize_for_logging(server_name))

    async def disconnect_server(self, server_name: str) -> None:
        entry = self._servers.get(server_name)
        if entry is None:
            raise ServerUnavailable(server_name, f"Server '{server_name}' is not configured", retryable=False)
        await self._cancel_reconnect(entry)
        await self._cancel_connect(entry)
        async with entry.lock:
            await self._close_session(server_name, entry)
            self._set_state(entry, ConnectionState.DISCONNECTED, tool_count=0, retry_count=0, retries_exhausted=False)
        self._rebuild_registry()

    async def disconnect_all(self) -> None:
        """Close every session; every server ends ``disconnected``."""
        names = list(self._servers)
        outcomes = await asyncio.gather(*(self.disconnect_server(n) for n in names), return_exceptions=True)
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, ServerUnavailable):
                logger.warning("Error disconnecting %s: %s", sanitize_for_logging(name), outcome)
        self._rebuild_registry()

    # ------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------
    def _rebuild_registry(self) -> None:
        connected = {
            name: entry.tools
            for name, entry in self._servers.items()
            if entry.status.state == ConnectionState.CONNECTED and entry.session is not None
        }
        self._registry.rebuild(list(self._servers), connected)
        for name, entry in self._servers.items():
            entry.status.tool_count = self._registry.count_for(name) if name in connected else 0

    def _owner_of(self, tool_id: str) -> Optional[str]:
        """Configured server whose name prefixes ``tool_id``."""
        owner = None
        for name in self._servers:
            if tool_id.startswith(name + TOOL_ID_SEPARATOR) and (owner is None or len(name) > len(owner)):
                owner = name
        return owner

    def _resolve(self, tool_id: str) -> Tuple[str, str]:
        tool = self._registry.get(tool_id)
        if tool is not None:
            return tool.server_name, tool.name

        # Tools of a server that is not connected are not in the registry;
        # report the server as unavailable rather than the tool as unknown.
        owner = self._owner_of(tool_id)
        if owner is not None and self._servers[owner].status.state != ConnectionState.CONNECTED:
            state = self._servers[owner].status.state.value
            raise ServerUnavailable(owner, f"Server '{owner}' is {state}; cannot call '{tool_id}'")
        raise UnknownTool(tool_id)

    async def connect_for_tool(self, tool_id: str) -> str:
        """Make sure the server owning ``tool_id`` is connected and return its name.

        Connects the owner on demand if it is ``disconnected`` or in ``error``.

        Raises:
            UnknownTool: no configured server owns the id, or the connected
                owner does not offer the tool.
            ServerUnavailable: the owner is disabled or failed to connect.
        """
        tool = self._registry.get(tool_id)
        if tool is not None:
            return tool.server_name

        owner = self._owner_of(tool_id)
        if owner is None:
            raise UnknownTool(tool_id)
        if self._servers[owner].status.state != ConnectionState.CONNECTED:
            logger.info("Connecting %s on demand for %s", sanitize_for_logging(owner), sanitize_for_logging(tool_id))
            result = await self.connect_server(owner)
            if not result.success:
                raise ServerUnavailable(owner, f"Server '{owner}' could not be connected: {result.error}")

        if self._registry.get(tool_id) is None:
            raise UnknownTool(tool_id)
        return owner

    async def call_tool(
        self,
        tool_id: str,
        arguments: Optional[Dict[str, Any]] = None,
        caller: Optional[str] = None,
    ) -> ToolResult:
        """Invoke a tool by its namespaced id on the server that owns it.

        ``caller`` identifies who asked for the call and is only recorded in
        metrics.

        Raises:
            UnknownTool: no such tool.
            ServerUnavailable: the owning server is not connected, or its
                session was closed while the call was in flight.
            ToolCallError: the server failed the call or it timed out.
        """
        server_name, tool_name = self._resolve(tool_id)
        entry = self._servers.get(server_name)
        session = entry.session if entry else None
        if entry is None or session is None or entry.status.state != ConnectionState.CONNECTED:
            raise ServerUnavailable(server_name)

        safe_tool_id = sanitize_for_logging(tool_id)
        logger.debug("Calling tool %s", safe_tool_id)
        start = time.perf_counter()
        try:
            result = await session.call_tool(tool_name, arguments or {})
        except (ToolCallError, ServerUnavailable) as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.warning("Tool call %s failed (%s): %s", safe_tool_id, e.code, sanitize_for_logging(e.message))
            log_metric("tool_call", caller, tool_id=tool_id, success=False, error_code=e.code, elapsed_ms=round(elapsed_ms))
            if isinstance(e, ServerUnavailable) and not session.closed:
                await self._fail_session(server_name, session, e.message)
            raise

        logger.info("Tool call %s completed in %.0fms", safe_tool_id, result.elapsed_ms)
        log_metric("tool_call", caller, tool_id=tool_id, success=True, elapsed_ms=round(result.elapsed_ms))
        return result

    def list_tools(self, server_name: Optional[str] = None, include_disabled: bool = False) -> List[Tool]:
        if server_name is not None:
            return self._registry.for_server(server_name, include_disabled=include_disabled)
        return self._registry.list(include_disabled=include_disabled)

    def get_tools_for_server(self, server_name: str) -> List[Tool]:
        return self._registry.for_server(server_name)

    def is_tool_available(self, tool_id: str) -> bool:
        """Whether ``tool_id`` resolves and its server is connected."""
        tool = self._registry.get(tool_id)
        if tool is None:
            return False
        entry = self._servers.get(tool.server_name)
        return entry is not None and entry.status.state == ConnectionState.CONNECTED

    def get_tools_schema(self, tool_ids: List[str]) -> List[Dict[str, Any]]:
        """Function-calling schemas for the requested tools.

        Unknown or unavailable ids are skipped with a warning.
        """
        schemas = []
        for tool_id in tool_ids:
            tool = self._registry.get(tool_id)
            if tool is None:
                logger.warning("Requested schema for unknown tool %s", sanitize_for_logging(tool_id))
                continue
            schemas.append(tool.to_function_schema())
        return schemas

    async def refresh_tools(self) -> Dict[str, int]:
        """Re-list tools on every connected server and rebuild the registry.

        Returns the enabled tool count per refreshed server. A server whose
        connection turns out to be gone is moved to ``error`` and handed to
        the reconnect policy.
        """
        refreshed: Dict[str, int] = {}
        for name, entry in list(self._servers.items()):
            session = entry.session
            if session is None or entry.status.state != ConnectionState.CONNECTED:
                continue
            try:
                tools = await session.list_tools()
            except ServerUnavailable as e:
                await self._fail_session(name, session, e.message)
                continue
            except ToolCallError as e:
                logger.warning("Tool refresh failed for %s; keeping previous tools: %s", sanitize_for_logging(name), e.message)
                continue
            async with entry.lock:
                if entry.session is session:
                    entry.tools = tools
            refreshed[name] = len(tools)

        self._rebuild_registry()
        for name in refreshed:
            refreshed[name] = self._registry.count_for(name)
        logger.info("Refreshed tools for %d servers", len(refreshed))
        return refreshed

    # ------------------------------------------------------------
    # Liveness
    # ------------------------------------------------------------
    async def check_health(self) -> Dict[str, bool]:
        """Probe every connected session once.

        Sessions that cross the liveness threshold, or whose transport has
        died, are moved to ``error`` and handed to the reconnect policy.
        """
        sessions = [
            (name, entry.session)
            for name, entry in list(self._servers.items())
            if entry.session is not None and entry.status.state == ConnectionState.CONNECTED
        ]
        if not sessions:
            return {}

        async def probe(name: str, session: ServerSession) -> bool:
            if not session.is_alive():
                await self._fail_session(name, session, "transport closed")
                return False
            return await session.ping()

        outcomes = await asyncio.gather(*(probe(n, s) for n, s in sessions), return_exceptions=True)
        health: Dict[str, bool] = {}
        for (name, _), outcome in zip(sessions, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Health check for %s raised: %s", sanitize_for_logging(name), outcome)
                health[name] = False
            else:
                health[name] = outcome
        log_metric("mcp_liveness", servers=len(health), healthy=sum(1 for ok in health.values() if ok))
        return health

    async def _handle_dead_session(self, server_name: str, reason: str) -> None:
        entry = self._servers.get(server_name)
        if entry is None or entry.session is None or not entry.session.dead:
            return
        await self._fail_session(server_name, entry.session, reason)

    async def _fail_session(self, server_name: str, session: ServerSession, reason: str) -> None:
        """Move a server whose session died to ``error`` and schedule a reconnect."""
        entry = self._servers.get(server_name)
        if entry is None:
            return
        async with entry.lock:
            if entry.session is not session:
                return
            await self._close_session(server_name, entry)
            self._set_state(entry, ConnectionState.ERROR, last_error=reason, tool_count=0)
        logger.warning("MCP server %s marked as failed: %s", sanitize_for_logging(server_name), sanitize_for_logging(reason))
        self._rebuild_registry()
        self._schedule_reconnect(server_name)

    async def start_health_monitor(self) -> None:
        """Start the background liveness loop (every MCP_HEALTH_CHECK_INTERVAL seconds)."""
        if self._health_running:
            logger.debug("Health monitor already running")
            return
        self._health_running = True
        self._health_task = asyncio.create_task(self._health_monitor_loop(), name="mcp-health-monitor")
        logger.info("Started MCP health monitor (interval: %ss)", self.settings.mcp_health_check_interval)

    async def stop_health_monitor(self) -> None:
        self._health_running = False
        task, self._health_task = self._health_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped MCP health monitor")

    async def _health_monitor_loop(self) -> None:
        interval = self.settings.mcp_health_check_interval
        while self._health_running:
            try:
                await asyncio.sleep(interval)
                await self.check_health()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in health monitor loop: {e}", exc_info=True)

    # ------------------------------------------------------------
    # Reconnect policy
    # ------------------------------------------------------------
    def _max_retries(self, config: Any) -> int:
        if config.max_retries is not None:
            return config.max_retries
        return self.settings.mcp_max_retries

    def _calculate_backoff_delay(self, attempt_count: int, config: Optional[Any] = None) -> float:
        """Exponential backoff delay before reconnect attempt ``attempt_count`` (1-based).

        ``base * multiplier ** (attempt_count - 1)`` capped at
        MCP_RECONNECT_MAX_INTERVAL; a per-server ``retryIntervalMs`` replaces
        the base interval.
        """
        base_interval = self.settings.mcp_reconnect_interval
        if config is not None and config.retry_interval_ms:
            base_interval = config.retry_interval_ms / 1000
        max_interval = self.settings.mcp_reconnect_max_interval
        multiplier = self.settings.mcp_reconnect_backoff_multiplier

        delay = base_interval * (multiplier ** (attempt_count - 1))
        return min(delay, max_interval)

    def _schedule_reconnect(self, server_name: str) -> None:
        entry = self._servers.get(server_name)
        if entry is None or self._closing or not entry.config.enabled:
            return
        if entry.reconnect_task is not None and not entry.reconnect_task.done():
            return
        entry.reconnect_task = asyncio.create_task(
            self._reconnect_loop(server_name, entry), name=f"mcp-reconnect-{server_name}"
        )

    async def _cancel_connect(self, entry: _ServerEntry) -> None:
        """Cancel an in-flight connect so the caller does not wait out its timeout."""
        task = entry.connect_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _cancel_reconnect(self, entry: _ServerEntry) -> None:
        task, entry.reconnect_task = entry.reconnect_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _reconnect_loop(self, server_name: str, entry: _ServerEntry) -> None:
        safe_server_name = sanitize_for_logging(server_name)
        max_retries = self._max_retries(entry.config)
        while not self._closing and self._servers.get(server_name) is entry:
            if entry.status.state != ConnectionState.ERROR:
                return
            if entry.status.retry_count >= max_retries:
                entry.status.retries_exhausted = True
                logger.warning(
                    "Giving up on MCP server %s after %d reconnect attempts; last error: %s",
                    safe_server_name,
                    entry.status.retry_count,
                    sanitize_for_logging(entry.status.last_error),
                )
                return

            attempt = entry.status.retry_count + 1
            delay = self._calculate_backoff_delay(attempt, entry.config)
            logger.info("Reconnecting to %s in %.1fs (attempt %d/%d)", safe_server_name, delay, attempt, max_retries)
            await asyncio.sleep(delay)

            async with entry.lock:
                if self._servers.get(server_name) is not entry or entry.status.state != ConnectionState.ERROR:
                    return
                entry.status.retry_count = attempt
                result = await self._open_session(server_name, entry, reconnecting=True)
            if result.success:
                logger.info("Reconnected to MCP server %s after %d attempts", safe_server_name, attempt)
                return

    # ------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------
    async def aclose(self) -> None:
        """Stop background tasks and close every session."""
        self._closing = True
        await self.stop_health_monitor()
        for entry in list(self._servers.values()):
            await self._cancel_reconnect(entry)
        await self.disconnect_all()
        logger.info("MCP connection manager closed")
