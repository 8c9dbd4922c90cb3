"""
toolmesh CLI - inspect and exercise MCP server configurations.

Usage:
    toolmesh validate config/mcp.json
    toolmesh status config/mcp.json
    toolmesh tools config/mcp.json --json
    toolmesh call config/mcp.json calculator:evaluate --args '{"expression": "2+2"}'
    toolmesh serve --port 8000
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from toolmesh.domain.errors import ConfigError, DomainError


def build_parser() -> argparse.ArgumentParser:
    """Build argument parser for the toolmesh CLI."""
    parser = argparse.ArgumentParser(
        prog="toolmesh",
        description="Connect to MCP tool servers, list their tools and call them.",
    )
    parser.add_argument("--env-file", default=None, help="Path to a .env file to load first.")
    parser.add_argument("--version", action="store_true", help="Print version and exit.")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("validate", help="Validate a server config file without connecting.")
    p.add_argument("config", help="Path to the server config JSON file.")

    p = sub.add_parser("status", help="Connect to every server and print its status.")
    p.add_argument("config", help="Path to the server config JSON file.")

    p = sub.add_parser("tools", help="Connect to every server and list the tools.")
    p.add_argument("config", help="Path to the server config JSON file.")
    p.add_argument("--json", dest="json_output", action="store_true", help="Print JSON instead of text.")

    p = sub.add_parser("call", help="Call one tool by its namespaced id (server:tool).")
    p.add_argument("config", help="Path to the server config JSON file.")
    p.add_argument("tool_id", help="Tool id, e.g. calculator:evaluate.")
    p.add_argument("--args", dest="tool_args", default="{}", help="Tool arguments as a JSON object.")

    p = sub.add_parser("serve", help="Run the HTTP API.")
    p.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1).")
    p.add_argument("--port", type=int, default=None, help="Port (default: PORT setting, 8000).")
    return parser


def validate(config_path: str) -> int:
    from toolmesh.modules.config import config_manager, parse_servers_config

    try:
        servers = parse_servers_config(config_manager.read_servers_file(config_path))
    except ConfigError as e:
        print(f"Invalid config: {config_path}", file=sys.stderr)
        for line in e.errors:
            print(f"  {line}", file=sys.stderr)
        return 1
    print(f"{config_path}: {len(servers)} servers OK")
    for name, cfg in servers.items():
        suffix = "" if cfg.enabled else " (disabled)"
        print(f"  {name}: {cfg.transport} {cfg.target}{suffix}")
    return 0


async def _connected_manager(config_path: str):
    from toolmesh.modules.mcp_tools.client import MCPConnectionManager

    manager = MCPConnectionManager()
    await manager.load_config_file(config_path)
    await manager.connect_all()
    return manager


async def status(config_path: str) -> int:
    manager = await _connected_manager(config_path)
    try:
        print(json.dumps(manager.status_snapshot(), indent=2))
        results = manager.last_connection_results
        return 0 if all(r.success for r in results) else 1
    finally:
        await manager.aclose()


async def list_tools(config_path: str, *, json_output: bool = False) -> int:
    """Connect and print all available tools in CLI-usable format."""
    manager = await _connected_manager(config_path)
    try:
        tools = manager.list_tools()
        if json_output:
            print(json.dumps({"tools": [t.to_dict() for t in tools]}, indent=2))
            return 0
        if not tools:
            print("No tools discovered.", file=sys.stderr)
            return 1
        current = None
        for tool in tools:
            if tool.server_name != current:
                current = tool.server_name
                print(f"{current}:")
            print(f"  {tool.id}  {tool.description.splitlines()[0] if tool.description else ''}".rstrip())
        return 0
    finally:
        await manager.aclose()


async def call(config_path: str, tool_id: str, raw_args: str) -> int:
    try:
        arguments = json.loads(raw_args)
    except json.JSONDecodeError as e:
        print(f"Error: --args is not valid JSON: {e}", file=sys.stderr)
        return 2
    if not isinstance(arguments, dict):
        print("Error: --args must be a JSON object", file=sys.stderr)
        return 2

    manager = await _connected_manager(config_path)
    try:
        result = await manager.call_tool(tool_id, arguments)
        print(json.dumps(result.to_dict(), indent=2))
        return 0
    except DomainError as e:
        print(f"Error ({e.code}): {e.message}", file=sys.stderr)
        return 1
    finally:
        await manager.aclose()


async def run(args: argparse.Namespace) -> int:
    try:
        if args.command == "status":
            return await status(args.config)
        if args.command == "tools":
            return await list_tools(args.config, json_output=args.json_output)
        if args.command == "call":
            return await call(args.config, args.tool_id, args.tool_args)
    except ConfigError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        logging.getLogger(__name__).debug("CLI error details", exc_info=True)
        return 1
    return 2


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from toolmesh.version import VERSION
        print(f"toolmesh version {VERSION}")
        sys.exit(0)

    if args.env_file:
        env_path = Path(args.env_file).expanduser()
        if not env_path.exists():
            print(f"Error: env file not found: {env_path}", file=sys.stderr)
            sys.exit(2)
        load_dotenv(dotenv_path=str(env_path))
    else:
        load_dotenv()

    if args.command is None:
        parser.print_help()
        sys.exit(2)
    if args.command == "validate":
        sys.exit(validate(args.config))
    if args.command == "serve":
        from toolmesh.main import main as serve

        serve(host=args.host, port=args.port)
        sys.exit(0)

    from toolmesh.core.logging_config import setup_logging

    setup_logging()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
