"""Server session: one live connection to one tool server."""

import asyncio
import contextlib
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mcp import MCPError

from toolmesh.core.log_sanitizer import sanitize_for_logging
from toolmesh.domain.errors import ServerUnavailable, ToolCallError
from toolmesh.domain.mcp.models import Tool, ToolResult, make_tool_id
from toolmesh.modules.mcp_tools.transports import TransportConnector, TransportHandle, describe_error

logger = logging.getLogger(__name__)

# Called with (server_name, reason) once a session crosses the liveness threshold
DeadSessionCallback = Callable[[str, str], Awaitable[None]]


class _RequestTimeout(Exception):
    pass


def _content_to_dict(block: Any) -> Dict[str, Any]:
    if hasattr(block, "model_dump"):
        return block.model_dump(mode="json", exclude_none=True)
    if isinstance(block, dict):
        return block
    return {"type": "text", "text": str(block)}


class ServerSession:
    """Wraps one live transport handle.

    Requests are serialized on transports that do not multiplex. Closing the
    session cancels whatever is in flight; callers see ``ServerUnavailable``.
    The session never reconnects by itself: after ``failure_threshold``
    consecutive failed pings it marks itself dead and reports to
    ``on_dead``; what happens next is the manager's decision.
    """

    def __init__(
        self,
        server_name: str,
        config: Any,
        connector: TransportConnector,
        handle: TransportHandle,
        *,
        call_timeout: float,
        discovery_timeout: float,
        ping_timeout: float,
        failure_threshold: int = 3,
        on_dead: Optional[DeadSessionCallback] = None,
    ):
        self._server_name = server_name
        self._config = config
        self._connector = connector
        self._handle = handle
        self.call_timeout = call_timeout
        self.discovery_timeout = discovery_timeout
        self.ping_timeout = ping_timeout
        self.failure_threshold = failure_threshold
        self._on_dead = on_dead

        self.created_at = datetime.now(timezone.utc)
        self.last_activity_at = self.created_at
        self._request_lock: Optional[asyncio.Lock] = None if connector.multiplexed else asyncio.Lock()
        self._closed = asyncio.Event()
        self._consecutive_ping_failures = 0
        self._dead = False

    @classmethod
    async def open(
        cls,
        server_name: str,
        config: Any,
        connector: TransportConnector,
        *,
        connect_timeout: float,
        **kwargs: Any,
    ) -> "ServerSession":
        """Open a connection through ``connector``; raises ``ConnectError``."""
        handle = await connector.open(server_name, config, connect_timeout)
        return cls(server_name, config, connector, handle, **kwargs)

    # ------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------
    @property
    def server_name(self) -> str:
        return self._server_name

    @property
    def config(self) -> Any:
        return self._config

    @property
    def transport_kind(self) -> str:
        return self._connector.kind

    @property
    def base_url(self) -> str:
        """Connection target: the URL, or the command line for process servers."""
        return self._config.target

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def dead(self) -> bool:
        return self._dead

    @property
    def consecutive_ping_failures(self) -> int:
        return self._consecutive_ping_failures

    def is_alive(self) -> bool:
        """Transport-level check; ``ping()`` is the protocol-level one."""
        return not self.closed and self._connector.is_alive(self._handle)

    # ------------------------------------------------------------
    # Request plumbing
    # ------------------------------------------------------------
    async def _serialized(self, coro: Awaitable[Any]) -> Any:
        if self._request_lock is None:
            return await coro
        async with self._request_lock:
            return await coro

    async def _request(self, coro: Awaitable[Any], timeout: float) -> Any:
        """Run one request, racing it against the timeout and against close()."""
        if self.closed:
            coro.close()
            raise ServerUnavailable(self._server_name, f"Session for '{self._server_name}' is closed")

        op = asyncio.ensure_future(self._serialized(coro))
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait({op, closer}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            op.cancel()
            raise
        finally:
            closer.cancel()

        if op in done:
            result = op.result()
            self.last_activity_at = datetime.now(timezone.utc)
            self._consecutive_ping_failures = 0
            return result

        op.cancel()
        await asyncio.gather(op, return_exceptions=True)
        if self.closed:
            raise ServerUnavailable(
                self._server_name,
                f"Session for '{self._server_name}' closed while a request was in flight",
            )
        raise _RequestTimeout()

    def _unavailable_if_gone(self, exc: BaseException) -> Optional[ServerUnavailable]:
        if self.closed or not self.is_alive():
            return ServerUnavailable(
                self._server_name,
                f"Connection to '{self._server_name}' lost: {describe_error(exc)}",
            )
        return None

    # ------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------
    async def list_tools(self) -> List[Tool]:
        """List the server's tools in the order the server reports them."""
        try:
            raw_tools = await self._request(self._handle.client.list_tools(), self.discovery_timeout)
        except _RequestTimeout:
            raise ToolCallError(
                f"{self._server_name}:*",
                f"Listing tools on '{self._server_name}' timed out after {self.discovery_timeout:g}s",
                code="timeout",
            )
        except (ServerUnavailable, asyncio.CancelledError):
            raise
        except Exception as e:
            unavailable = self._unavailable_if_gone(e)
            if unavailable:
                raise unavailable from e
            raise ToolCallError(f"{self._server_name}:*", f"Listing tools failed: {describe_error(e)}") from e

        tools = []
        for raw in raw_tools:
            tools.append(
                Tool(
                    id=make_tool_id(self._server_name, raw.name),
                    server_name=self._server_name,
                    name=raw.name,
                    description=getattr(raw, "description", None) or "",
                    input_schema=dict(getattr(raw, "input_schema", None) or getattr(raw, "inputSchema", None) or {}),
                )
            )
        logger.debug(
            "Listed %d tools from %s: %s",
            len(tools),
            sanitize_for_logging(self._server_name),
            [t.name for t in tools],
        )
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Invoke one tool; raises ``ToolCallError`` or ``ServerUnavailable``."""
        tool_id = make_tool_id(self._server_name, name)
        start = time.perf_counter()
        try:
            raw_result = await self._request(
                self._handle.client.call_tool(name, arguments or {}, raise_on_error=False),
                self.call_timeout,
            )
        except _RequestTimeout:
            raise ToolCallError(
                tool_id,
                f"Tool call '{name}' on server '{self._server_name}' timed out after {self.call_timeout:g}s",
                code="timeout",
            )
        except (ServerUnavailable, asyncio.CancelledError):
            raise
        except MCPError as e:
            raise ToolCallError(tool_id, f"Server rejected tool call '{name}': {e}", code="protocol_error") from e
        except Exception as e:
            unavailable = self._unavailable_if_gone(e)
            if unavailable:
                raise unavailable from e
            raise ToolCallError(tool_id, f"Tool call '{name}' failed: {describe_error(e)}") from e

        elapsed_ms = (time.perf_counter() - start) * 1000
        content = [_content_to_dict(block) for block in (getattr(raw_result, "content", None) or [])]

        if getattr(raw_result, "is_error", False):
            detail = "\n".join(b.get("text", "") for b in content if b.get("type") == "text") or "unknown error"
            raise ToolCallError(tool_id, f"Tool '{name}' reported an error: {detail}", code="tool_error")

        return ToolResult(
            tool_id=tool_id,
            content=content,
            structured_content=getattr(raw_result, "structured_content", None),
            elapsed_ms=elapsed_ms,
        )

    async def ping(self) -> bool:
        """Protocol-level liveness probe. Never raises."""
        if self.closed:
            return False
        reason = None
        try:
            ok = await self._request(self._handle.client.ping(), self.ping_timeout)
            if ok is False:
                reason = "ping returned false"
        except _RequestTimeout:
            reason = f"ping timed out after {self.ping_timeout:g}s"
        except ServerUnavailable as e:
            reason = e.message
        except Exception as e:
            reason = describe_error(e)

        if reason is None:
            return True

        self._consecutive_ping_failures += 1
        logger.warning(
            "Liveness probe %d/%d failed for '%s': %s",
            self._consecutive_ping_failures,
            self.failure_threshold,
            sanitize_for_logging(self._server_name),
            sanitize_for_logging(reason),
        )
        if self._consecutive_ping_failures >= self.failure_threshold and not self._dead:
            self._dead = True
            if self._on_dead is not None:
                await self._on_dead(
                    self._server_name,
                    f"{self._consecutive_ping_failures} consecutive liveness probes failed: {reason}",
                )
        return False

    async def close(self) -> None:
        """Cancel in-flight requests and release the transport. Idempotent."""
        if self.closed and self._handle.closed:
            return
        self._closed.set()
        with contextlib.suppress(Exception):
            await self._connector.close(self._handle)
        logger.debug("Closed session for %s", sanitize_for_logging(self._server_name))
