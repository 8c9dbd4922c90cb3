"""HTTP routes for MCP server status, connection control and tool invocation.

The connection manager is resolved from ``request.app.state.mcp_manager``;
these routes hold no state and no policy of their own.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field

from toolmesh.core.log_sanitizer import sanitize_for_logging
from toolmesh.domain.errors import ConfigError, ServerUnavailable, ToolCallError, UnknownTool
from toolmesh.modules.config import config_manager, parse_servers_config
from toolmesh.modules.mcp_tools.client import MCPConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mcp", tags=["mcp"])


class CallToolRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_id: str = Field(alias="toolId", min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    # Connect the owning server first if it is not connected
    connect: bool = False


def get_manager(request: Request) -> MCPConnectionManager:
    manager = getattr(request.app.state, "mcp_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="MCP connection manager is not initialized")
    return manager


def _require_server(manager: MCPConnectionManager, name: str) -> None:
    if name not in manager.server_names:
        raise HTTPException(status_code=404, detail=f"Server '{name}' is not configured")


@router.get("/status")
async def get_status(request: Request) -> Dict[str, Any]:
    """Connection status of every configured server plus the last connect results."""
    return get_manager(request).status_snapshot()


@router.post("/connect")
async def connect_all(request: Request) -> Dict[str, Any]:
    """Connect every server that is disconnected or in error."""
    manager = get_manager(request)
    results = await manager.connect_all()
    return {
        "results": [r.to_dict() for r in results],
        "status": manager.status_snapshot()["servers"],
    }


@router.post("/servers/{name}/connect")
async def connect_server(name: str, request: Request) -> Dict[str, Any]:
    manager = get_manager(request)
    _require_server(manager, name)
    try:
        result = await manager.connect_server(name)
    except ServerUnavailable as e:
        raise HTTPException(status_code=409, detail=e.message)
    return result.to_dict()


@router.post("/servers/{name}/disconnect")
async def disconnect_server(name: str, request: Request) -> Dict[str, Any]:
    manager = get_manager(request)
    _require_server(manager, name)
    await manager.disconnect_server(name)
    return {"server": name, "status": manager.get_connection_status()[name].to_dict()}


@router.post("/reload")
async def reload_servers(request: Request) -> Dict[str, Any]:
    """Re-read the server config file, install it and connect."""
    manager = get_manager(request)
    path = config_manager.find_mcp_config_file()
    if path is None:
        raise HTTPException(status_code=404, detail="No MCP config file found")
    try:
        await manager.load_config_file(path)
    except ConfigError as e:
        logger.error("Reload rejected invalid config from %s: %s", path, sanitize_for_logging(e.message))
        raise HTTPException(status_code=422, detail={"message": "Invalid server config", "errors": e.errors})

    config_manager.reload_mcp_config()
    results = await manager.connect_all()
    logger.info("MCP servers reloaded from %s", path)
    return {
        "message": "MCP servers reloaded",
        "servers": manager.server_names,
        "results": [r.to_dict() for r in results],
        "status": manager.status_snapshot()["servers"],
    }


@router.get("/tools")
async def list_tools(request: Request, server: Optional[str] = None, include_disabled: bool = False) -> Dict[str, List[Dict[str, Any]]]:
    manager = get_manager(request)
    return {"tools": [t.to_dict() for t in manager.list_tools(server, include_disabled=include_disabled)]}


@router.post("/call-tool")
async def call_tool(body: CallToolRequest, request: Request) -> Dict[str, Any]:
    """Invoke a tool by its namespaced id.

    Unknown tools map to 404, unavailable servers to 503 and failed calls to 502.
    """
    manager = get_manager(request)
    try:
        if body.connect:
            await manager.connect_for_tool(body.tool_id)
        caller = request.headers.get(manager.settings.auth_user_header)
        result = await manager.call_tool(body.tool_id, body.arguments, caller=caller)
    except UnknownTool as e:
        raise HTTPException(status_code=404, detail={"code": e.code, "message": e.message})
    except ServerUnavailable as e:
        raise HTTPException(
            status_code=503,
            detail={"code": e.code, "message": e.message, "retryable": e.retryable},
        )
    except ToolCallError as e:
        raise HTTPException(status_code=502, detail={"code": e.code, "message": e.message})
    return result.to_dict()


@router.post("/validate")
async def validate_config(raw: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    """Validate a server config without installing it."""
    try:
        servers = parse_servers_config(raw)
    except ConfigError as e:
        return {"valid": False, "errors": e.errors}
    return {
        "valid": True,
        "servers": {name: {"transport": cfg.transport, "enabled": cfg.enabled} for name, cfg in servers.items()},
    }
