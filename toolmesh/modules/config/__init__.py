"""Configuration module.

This module provides centralized configuration management with:
- Pydantic models for validation of tool server definitions
- Environment variable loading for runtime settings
- File-based configuration with a package-default fallback
"""

from .config_manager import (
    AppSettings,
    ConfigManager,
    HttpServerConfig,
    ProcessServerConfig,
    ServerConfig,
    SocketServerConfig,
    config_manager,
    get_app_settings,
    get_mcp_config,
    parse_servers_config,
    resolve_env_var,
)

__all__ = [
    "AppSettings",
    "ConfigManager",
    "HttpServerConfig",
    "ProcessServerConfig",
    "ServerConfig",
    "SocketServerConfig",
    "config_manager",
    "get_app_settings",
    "get_mcp_config",
    "parse_servers_config",
    "resolve_env_var",
]
