"""
Centralized configuration management using Pydantic models.

This module provides:
- Runtime settings loaded from environment variables / .env (``AppSettings``)
- Tool server definitions validated as a tagged union keyed by transport kind
- Exhaustive validation: every invalid server entry is reported at once
- A cached ``ConfigManager`` that locates ``mcp.json`` and supports hot reload
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

from toolmesh.domain.errors import ConfigError
from toolmesh.domain.mcp.models import TOOL_ID_SEPARATOR

logger = logging.getLogger(__name__)


def resolve_env_var(value: Optional[str], required: bool = True) -> Optional[str]:
    """
    Resolve environment variables in config values.

    Supports patterns like:
    - "${ENV_VAR_NAME}" -> replaced with os.environ.get("ENV_VAR_NAME")
    - "literal-string" -> returned as-is
    - None -> returned as-is

    Only complete env var patterns are resolved. Values like "prefix-${VAR}"
    or "${VAR}-suffix" are treated as literals and returned unchanged.

    Raises:
        ValueError: If env var pattern is found but variable is not set and required=True
    """
    if value is None:
        return None

    pattern = r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}'
    match = re.fullmatch(pattern, value)

    if match:
        env_var_name = match.group(1)
        env_value = os.environ.get(env_var_name)

        if env_value is None:
            if required:
                raise ValueError(
                    f"Environment variable '{env_var_name}' is not set but required in config"
                )
            return None

        return env_value

    return value


# ---------------------------------------------------------------------------
# Tool server definitions
# ---------------------------------------------------------------------------

# Accepted spellings -> (transport kind, http protocol override)
_TRANSPORT_ALIASES: Dict[str, tuple] = {
    "process": ("process", None),
    "stdio": ("process", None),
    "socket": ("socket", None),
    "websocket": ("socket", None),
    "ws": ("socket", None),
    "http": ("http", None),
    "streamable-http": ("http", "streamable-http"),
    "streamable_http": ("http", "streamable-http"),
    "sse": ("http", "sse"),
}


class _ServerConfigBase(BaseModel):
    """Fields shared by every transport kind."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    description: Optional[str] = None
    enabled: bool = True
    timeout_ms: Optional[int] = Field(default=None, gt=0)       # connect timeout
    call_timeout_ms: Optional[int] = Field(default=None, gt=0)  # per-request timeout
    max_retries: Optional[int] = Field(default=None, ge=0)
    retry_interval_ms: Optional[int] = Field(default=None, gt=0)

    def to_log_dict(self) -> Dict[str, Any]:
        """Config as a plain dict with credentials masked."""
        from toolmesh.core.log_sanitizer import summarize_server_config_for_logging

        return summarize_server_config_for_logging(self.model_dump(exclude_none=True))


class ProcessServerConfig(_ServerConfigBase):
    """A server spawned as a child process speaking the protocol over stdio."""
    transport: Literal["process"]
    command: str = Field(min_length=1)
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def split_command_list(cls, data: Any) -> Any:
        """Accept ``command: ["python", "server.py"]`` as well as command + args."""
        if isinstance(data, dict) and isinstance(data.get("command"), list):
            data = dict(data)
            parts = data.pop("command")
            if not parts:
                raise ValueError("command must not be empty")
            data["command"] = parts[0]
            data["args"] = [*parts[1:], *(data.get("args") or [])]
        return data

    @property
    def target(self) -> str:
        return " ".join([self.command, *self.args])


class SocketServerConfig(_ServerConfigBase):
    """A server reached over a WebSocket (``ws://`` / ``wss://``)."""
    transport: Literal["socket"]
    url: str
    headers: Optional[Dict[str, str]] = None  # sent on the upgrade request; supports ${ENV_VAR}

    @field_validator("url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("socket url must start with ws:// or wss://")
        return v

    @property
    def target(self) -> str:
        return self.url


class HttpServerConfig(_ServerConfigBase):
    """A server reached over HTTP, either Streamable HTTP or SSE."""
    transport: Literal["http"]
    url: str
    protocol: Literal["streamable-http", "sse"] = "streamable-http"
    headers: Optional[Dict[str, str]] = None
    api_key: Optional[str] = None  # sent as "Authorization: Bearer"; supports ${ENV_VAR}

    @model_validator(mode="before")
    @classmethod
    def detect_protocol(cls, data: Any) -> Any:
        """Default to SSE for URLs ending in /sse, Streamable HTTP otherwise."""
        if isinstance(data, dict) and not data.get("protocol"):
            url = data.get("url")
            if isinstance(url, str) and url.rstrip("/").endswith("/sse"):
                data = {**data, "protocol": "sse"}
        return data

    @field_validator("url")
    @classmethod
    def ensure_scheme(cls, v: str) -> str:
        if not v:
            raise ValueError("url must not be empty")
        if "://" not in v:
            v = f"http://{v}"
        if not v.startswith(("http://", "https://")):
            raise ValueError("http url must use http:// or https://")
        return v

    @property
    def target(self) -> str:
        return self.url


ServerConfig = Annotated[
    Union[ProcessServerConfig, SocketServerConfig, HttpServerConfig],
    Field(discriminator="transport"),
]

_SERVER_CONFIG_ADAPTER: TypeAdapter = TypeAdapter(ServerConfig)


def _normalize_entry(entry: Mapping[str, Any]) -> Dict[str, Any]:
    """Map transport aliases (and the legacy ``type`` key) onto the canonical kinds."""
    data = dict(entry)
    raw_kind = data.pop("transport", None)
    legacy_kind = data.pop("type", None)
    if raw_kind is None:
        raw_kind = legacy_kind
    if raw_kind is None:
        raise ValueError("missing transport kind (expected one of: process, socket, http)")
    if not isinstance(raw_kind, str) or raw_kind.lower() not in _TRANSPORT_ALIASES:
        raise ValueError(f"unknown transport kind {raw_kind!r} (expected one of: process, socket, http)")

    kind, protocol = _TRANSPORT_ALIASES[raw_kind.lower()]
    data["transport"] = kind
    if protocol and not data.get("protocol"):
        data["protocol"] = protocol
    return data


def _format_validation_error(name: str, exc: ValidationError) -> List[str]:
    lines = []
    for err in exc.errors():
        # Drop the union tag from the location, e.g. ("process", "command") -> "command"
        loc = [str(p) for p in err.get("loc", ()) if p not in ("process", "socket", "http")]
        where = f"{name}.{'.'.join(loc)}" if loc else name
        lines.append(f"{where}: {err.get('msg')}")
    return lines


def parse_servers_config(raw: Any) -> Dict[str, Union[ProcessServerConfig, SocketServerConfig, HttpServerConfig]]:
    """Validate a raw ``name -> parameters`` mapping.

    Accepts the flat form or one wrapped in ``mcpServers`` / ``servers``.
    Returns the validated configs in declaration order.

    Raises:
        ConfigError: listing every invalid entry, not just the first.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError([f"server config must be a JSON object, got {type(raw).__name__}"])

    for wrapper in ("mcpServers", "servers"):
        if isinstance(raw.get(wrapper), Mapping):
            raw = raw[wrapper]
            break

    validated: Dict[str, Any] = {}
    errors: List[str] = []
    for name, entry in raw.items():
        if not isinstance(name, str) or not name.strip():
            errors.append(f"{name!r}: server name must be a non-empty string")
            continue
        if TOOL_ID_SEPARATOR in name:
            errors.append(f"{name}: server name must not contain '{TOOL_ID_SEPARATOR}' (it separates server and tool in tool ids)")
            continue
        if not isinstance(entry, Mapping):
            errors.append(f"{name}: expected an object, got {type(entry).__name__}")
            continue
        try:
            data = _normalize_entry(entry)
        except ValueError as e:
            errors.append(f"{name}: {e}")
            continue
        try:
            validated[name] = _SERVER_CONFIG_ADAPTER.validate_python(data)
        except ValidationError as e:
            errors.extend(_format_validation_error(name, e))

    if errors:
        raise ConfigError(errors)
    return validated


# ---------------------------------------------------------------------------
# Runtime settings
# ---------------------------------------------------------------------------

class AppSettings(BaseSettings):
    """Main application settings loaded from environment variables."""

    app_name: str = "toolmesh"
    port: int = 8000
    debug_mode: bool = False
    log_level: str = "INFO"  # Override default logging level (DEBUG, INFO, WARNING, ERROR)
    environment: str = Field(default="production", validation_alias="ENVIRONMENT")
    feature_metrics_logging_enabled: bool = Field(
        False,
        description="Enable [METRIC] log lines for connect attempts and tool calls",
        validation_alias=AliasChoices("FEATURE_METRICS_LOGGING_ENABLED"),
    )

    auth_user_header: str = Field(
        default="X-User-Email",
        description="Request header naming the caller; recorded on tool-call metrics",
        validation_alias="AUTH_USER_HEADER",
    )

    # Config file location (user customizations; falls back to toolmesh/config/ for defaults)
    app_config_dir: str = Field(default="config", validation_alias="APP_CONFIG_DIR")
    mcp_config_file: str = Field(default="mcp.json", validation_alias="MCP_CONFIG_FILE")
    app_log_dir: Optional[str] = Field(default=None, validation_alias="APP_LOG_DIR")

    # Timeouts (seconds); per-server timeoutMs / callTimeoutMs override these
    mcp_connect_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for establishing a session (spawn/dial + handshake)",
        validation_alias="MCP_CONNECT_TIMEOUT",
    )
    mcp_discovery_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for MCP discovery calls (list_tools)",
        validation_alias="MCP_DISCOVERY_TIMEOUT",
    )
    mcp_call_timeout: float = Field(
        default=120.0,
        description="Timeout in seconds for MCP tool calls (call_tool)",
        validation_alias="MCP_CALL_TIMEOUT",
    )
    mcp_ping_timeout: float = Field(
        default=10.0,
        description="Timeout in seconds for a single liveness probe",
        validation_alias="MCP_PING_TIMEOUT",
    )

    # Health checks
    mcp_health_check_interval: float = Field(
        default=60.0,
        description="Seconds between liveness probes of connected servers",
        validation_alias="MCP_HEALTH_CHECK_INTERVAL",
    )
    mcp_liveness_failure_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed probes after which a session is considered dead",
        validation_alias="MCP_LIVENESS_FAILURE_THRESHOLD",
    )

    # Connection orchestration
    mcp_max_parallel_connects: int = Field(
        default=8,
        ge=1,
        description="Maximum number of servers connected concurrently by connect_all",
        validation_alias="MCP_MAX_PARALLEL_CONNECTS",
    )

    # Reconnect policy
    feature_mcp_auto_reconnect_enabled: bool = Field(
        False,
        description="Also retry servers whose initial connect failed (liveness failures always retry)",
        validation_alias=AliasChoices("FEATURE_MCP_AUTO_RECONNECT_ENABLED"),
    )
    mcp_max_retries: int = Field(
        default=5,
        ge=0,
        description="Reconnect attempts before a server is left in error until the next explicit connect",
        validation_alias="MCP_MAX_RETRIES",
    )
    mcp_reconnect_interval: float = Field(
        default=2.0,
        description="Base interval in seconds between MCP reconnect attempts",
        validation_alias="MCP_RECONNECT_INTERVAL",
    )
    mcp_reconnect_max_interval: float = Field(
        default=60.0,
        description="Maximum interval in seconds between MCP reconnect attempts (caps exponential backoff)",
        validation_alias="MCP_RECONNECT_MAX_INTERVAL",
    )
    mcp_reconnect_backoff_multiplier: float = Field(
        default=2.0,
        description="Multiplier for exponential backoff between reconnect attempts",
        validation_alias="MCP_RECONNECT_BACKOFF_MULTIPLIER",
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_prefix": "",
        "populate_by_name": True,
    }


class ConfigManager:
    """Centralized configuration manager with proper error handling."""

    def __init__(self, package_root: Optional[Path] = None):
        self._package_root = package_root or Path(__file__).parent.parent.parent
        self._app_settings: Optional[AppSettings] = None
        self._mcp_config: Optional[Dict[str, Any]] = None

    def _search_paths(self, file_name: str) -> List[Path]:
        """Generate search paths for a configuration file.

        Two-layer lookup:
        1. User config dir (APP_CONFIG_DIR, default "config/") - user customizations
        2. Package defaults (toolmesh/config/) - always available as fallback
        """
        project_root = self._package_root.parent

        config_dir = Path(self.app_settings.app_config_dir)
        if not config_dir.is_absolute():
            config_dir_project = project_root / config_dir
        else:
            config_dir_project = config_dir

        candidates: List[Path] = [
            config_dir / file_name,
            config_dir_project / file_name,
            self._package_root / "config" / file_name,
        ]

        seen = set()
        search_paths: List[Path] = []
        for p in candidates:
            if p not in seen:
                seen.add(p)
                search_paths.append(p)

        logger.debug("Config search paths for %s: %s", file_name, [str(p) for p in search_paths])
        return search_paths

    @property
    def app_settings(self) -> AppSettings:
        """Get application settings (cached)."""
        if self._app_settings is None:
            self._app_settings = AppSettings()
            logger.info("Application settings loaded successfully")
        return self._app_settings

    def find_mcp_config_file(self) -> Optional[Path]:
        """First existing ``mcp.json`` along the search path, if any."""
        for path in self._search_paths(self.app_settings.mcp_config_file):
            if path.exists():
                return path
        return None

    def read_servers_file(self, path: Union[str, Path]) -> Dict[str, Any]:
        """Read a raw server config JSON file.

        Raises:
            ConfigError: if the file is missing, unreadable, or not a JSON object.
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise ConfigError([f"config file not found: {path}"])
        except json.JSONDecodeError as e:
            raise ConfigError([f"JSON parsing error in {path}: {e}"])
        except OSError as e:
            raise ConfigError([f"cannot read {path}: {e}"])

        if not isinstance(data, dict):
            raise ConfigError([f"invalid format in {path}: expected object, got {type(data).__name__}"])

        logger.info(f"Successfully loaded server config from {path}")
        return data

    @property
    def mcp_config(self) -> Dict[str, Any]:
        """Validated server configs from the default ``mcp.json`` (cached).

        An invalid or missing file yields an empty config and an error log;
        use ``parse_servers_config`` directly to get the ``ConfigError``.
        """
        if self._mcp_config is None:
            path = self.find_mcp_config_file()
            if path is None:
                logger.info("Created empty MCP config (no configuration file found)")
                self._mcp_config = {}
            else:
                try:
                    self._mcp_config = parse_servers_config(self.read_servers_file(path))
                    logger.info(f"Loaded MCP config with {len(self._mcp_config)} servers: {list(self._mcp_config)}")
                except ConfigError as e:
                    for line in e.errors:
                        logger.error(f"Invalid MCP config in {path}: {line}")
                    self._mcp_config = {}
        return self._mcp_config

    def reload_configs(self) -> None:
        """Reload all configurations from files."""
        self._app_settings = None
        self._mcp_config = None
        logger.info("Configuration cache cleared, will reload on next access")

    def reload_mcp_config(self) -> Dict[str, Any]:
        """Clear the cached server config and read it again from disk."""
        self._mcp_config = None
        logger.info("MCP configuration cache cleared, reloading from disk")
        return self.mcp_config


# Global configuration manager instance
config_manager = ConfigManager()


def get_app_settings() -> AppSettings:
    """Get application settings."""
    return config_manager.app_settings


def get_mcp_config() -> Dict[str, Any]:
    """Get validated MCP server configuration."""
    return config_manager.mcp_config
