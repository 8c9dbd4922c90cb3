#!/usr/bin/env python3
"""
Echo Demo MCP Server using FastMCP
Small tool set for checking a connection end to end: echo, add, a slow
tool for timeout handling and a failing tool for error reporting.
"""

import argparse
import asyncio
import os
import time
from typing import Any, Dict, Optional

from fastmcp import Context, FastMCP

# Initialize the MCP server
mcp = FastMCP("Echo Demo")


@mcp.tool
def echo(x: Any = None, text: Optional[str] = None) -> Dict[str, Any]:
    """Return the arguments unchanged.

    Args:
        x: Any JSON value
        text: Optional text to echo back

    Returns:
        {"echo": {"x": ..., "text": ...}}
    """
    return {"echo": {"x": x, "text": text}}


@mcp.tool
def add(a: float, b: float) -> float:
    """Add two numbers."""
    return a + b


@mcp.tool
async def sleep(seconds: float = 1.0) -> Dict[str, Any]:
    """Wait for the given number of seconds, then report how long it took."""
    start = time.perf_counter()
    await asyncio.sleep(seconds)
    return {"slept_ms": round((time.perf_counter() - start) * 1000, 1)}


@mcp.tool
def fail(message: str = "requested failure") -> str:
    """Always fail with the given message."""
    raise ValueError(message)


@mcp.tool
def get_env(var_name: str) -> Dict[str, Any]:
    """Read an environment variable as seen by this server process."""
    value = os.environ.get(var_name)
    return {"var_name": var_name, "var_value": value, "is_set": value is not None}


@mcp.tool
async def log_message(message: str, level: str = "warning", ctx: Context = None) -> str:
    """Send a log notification to the client at the given level."""
    log = {"debug": ctx.debug, "info": ctx.info, "warning": ctx.warning, "error": ctx.error}.get(level, ctx.info)
    await log(message)
    return "logged"


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Echo demo MCP server")
    parser.add_argument("--transport", choices=["stdio", "http", "sse"], default="stdio")
    parser.add_argument("--port", type=int, default=8010)
    args = parser.parse_args()

    if args.transport == "stdio":
        mcp.run()
    else:
        mcp.run(transport=args.transport, host="127.0.0.1", port=args.port)
