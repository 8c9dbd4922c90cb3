"""
HTTP application exposing the connection manager to a hosting backend.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from toolmesh.core.logging_config import setup_logging
from toolmesh.domain.errors import ConfigError, DomainError
from toolmesh.modules.config import config_manager
from toolmesh.modules.mcp_tools.client import MCPConnectionManager
from toolmesh.routes.mcp_routes import router as mcp_router
from toolmesh.version import VERSION

logger = logging.getLogger(__name__)


async def _start_manager(manager: MCPConnectionManager, load_config: bool) -> None:
    if load_config:
        path = config_manager.find_mcp_config_file()
        if path is None:
            logger.warning("No MCP config file found; starting with no servers")
        else:
            try:
                await manager.load_config_file(path)
            except ConfigError as e:
                for line in e.errors:
                    logger.error(f"Invalid MCP config in {path}: {line}")

    logger.info(f"MCP servers configured: {len(manager.server_names)}")
    results = await manager.connect_all()
    failed = [r.server_name for r in results if not r.success]
    if failed:
        logger.warning(f"MCP servers failed to connect at startup: {failed}")
    await manager.start_health_monitor()


def create_app(manager: Optional[MCPConnectionManager] = None, load_config: bool = True) -> FastAPI:
    """Build the FastAPI app.

    The manager is stored on ``app.state.mcp_manager``. When none is given
    one is constructed at startup from the environment settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting toolmesh %s", VERSION)
        if getattr(app.state, "mcp_manager", None) is None:
            app.state.mcp_manager = MCPConnectionManager()
        try:
            await _start_manager(app.state.mcp_manager, load_config)
        except Exception as e:
            logger.error(f"Error during MCP initialization: {e}", exc_info=True)

        yield

        logger.info("Shutting down toolmesh")
        await app.state.mcp_manager.aclose()

    app = FastAPI(
        title="toolmesh",
        description="Multi-server MCP connection manager",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.mcp_manager = manager

    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError):
        logger.error(f"Unhandled domain error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=500, content={"code": exc.code, "message": exc.message})

    app.include_router(mcp_router)
    return app


app = create_app()


def main(host: str = "127.0.0.1", port: Optional[int] = None) -> None:
    import uvicorn

    load_dotenv()
    setup_logging(service_version=VERSION)
    uvicorn.run(app, host=host, port=port or config_manager.app_settings.port)


if __name__ == "__main__":
    main()
