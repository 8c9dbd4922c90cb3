"""Tests for server config validation and the config file layer."""

import json

import pytest

from toolmesh.domain.errors import ConfigError
from toolmesh.modules.config.config_manager import (
    AppSettings,
    ConfigManager,
    HttpServerConfig,
    ProcessServerConfig,
    SocketServerConfig,
    parse_servers_config,
    resolve_env_var,
)


class TestParseServersConfig:
    def test_each_transport_kind(self):
        servers = parse_servers_config({
            "calc": {"transport": "process", "command": "python", "args": ["calc.py"], "timeoutMs": 5000},
            "ws": {"transport": "socket", "url": "ws://localhost:9000/mcp"},
            "web": {"transport": "http", "url": "https://example.com/mcp", "apiKey": "${TOKEN}"},
        })
        assert isinstance(servers["calc"], ProcessServerConfig)
        assert servers["calc"].timeout_ms == 5000
        assert servers["calc"].target == "python calc.py"
        assert isinstance(servers["ws"], SocketServerConfig)
        assert servers["ws"].target == "ws://localhost:9000/mcp"
        assert isinstance(servers["web"], HttpServerConfig)
        assert servers["web"].api_key == "${TOKEN}"
        assert servers["web"].protocol == "streamable-http"
        assert servers["web"].target == "https://example.com/mcp"

    def test_declaration_order_is_kept(self):
        raw = {name: {"transport": "process", "command": "x"} for name in ("zeta", "alpha", "mid")}
        assert list(parse_servers_config(raw)) == ["zeta", "alpha", "mid"]

    @pytest.mark.parametrize("wrapper", ["mcpServers", "servers"])
    def test_wrapped_form(self, wrapper):
        servers = parse_servers_config({wrapper: {"a": {"transport": "process", "command": "x"}}})
        assert list(servers) == ["a"]

    def test_transport_aliases(self):
        servers = parse_servers_config({
            "a": {"transport": "stdio", "command": "x"},
            "b": {"transport": "websocket", "url": "wss://h/mcp"},
            "c": {"type": "sse", "url": "http://h/events"},
            "d": {"transport": "streamable-http", "url": "http://h/mcp"},
        })
        assert servers["a"].transport == "process"
        assert servers["b"].transport == "socket"
        assert servers["c"].transport == "http"
        assert servers["c"].protocol == "sse"
        assert servers["d"].protocol == "streamable-http"

    def test_sse_detected_from_url(self):
        servers = parse_servers_config({"a": {"transport": "http", "url": "http://h/sse"}})
        assert servers["a"].protocol == "sse"

    def test_command_list_is_split(self):
        servers = parse_servers_config({"a": {"transport": "process", "command": ["python", "-m", "srv"], "args": ["--x"]}})
        assert servers["a"].command == "python"
        assert servers["a"].args == ["-m", "srv", "--x"]

    def test_http_url_without_scheme_gets_http(self):
        servers = parse_servers_config({"a": {"transport": "http", "url": "localhost:8010/mcp"}})
        assert servers["a"].url == "http://localhost:8010/mcp"

    def test_all_invalid_entries_are_reported(self):
        raw = {
            "ok": {"transport": "process", "command": "x"},
            "no_kind": {"command": "x"},
            "bad_kind": {"transport": "carrier-pigeon"},
            "no_command": {"transport": "process"},
            "bad_ws": {"transport": "socket", "url": "http://h/mcp"},
            "bad_http": {"transport": "http", "url": "ftp://h/mcp"},
            "not_object": "python server.py",
        }
        with pytest.raises(ConfigError) as exc_info:
            parse_servers_config(raw)

        errors = exc_info.value.errors
        for name in ("no_kind", "bad_kind", "no_command", "bad_ws", "bad_http", "not_object"):
            assert any(line.startswith(name) for line in errors), name
        assert not any(line.startswith("ok") for line in errors)
        assert exc_info.value.code == "config_error"

    def test_negative_timeout_rejected(self):
        with pytest.raises(ConfigError) as exc_info:
            parse_servers_config({"a": {"transport": "process", "command": "x", "timeoutMs": -1}})
        assert any("a.timeoutMs" in line for line in exc_info.value.errors)

    def test_server_name_with_separator_rejected(self):
        raw = {
            "a": {"transport": "process", "command": "x"},
            "a:b": {"transport": "process", "command": "y"},
            "c": {"transport": "process"},
        }
        with pytest.raises(ConfigError) as exc_info:
            parse_servers_config(raw)

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any(line.startswith("a:b:") and "must not contain" in line for line in errors)
        assert any(line.startswith("c.command") for line in errors)

    def test_non_object_rejected(self):
        with pytest.raises(ConfigError):
            parse_servers_config(["a", "b"])

    def test_configs_compare_by_value(self):
        first = parse_servers_config({"a": {"transport": "process", "command": "x"}})["a"]
        second = parse_servers_config({"a": {"transport": "stdio", "command": "x"}})["a"]
        changed = parse_servers_config({"a": {"transport": "process", "command": "y"}})["a"]
        assert first == second
        assert first != changed

    def test_log_dict_masks_credentials(self):
        cfg = parse_servers_config({
            "a": {"transport": "http", "url": "http://h/mcp", "apiKey": "sk-secret", "headers": {"X-Token": "abc"}},
        })["a"]
        logged = cfg.to_log_dict()
        assert logged["api_key"] == "***"
        assert logged["headers"] == {"X-Token": "***"}
        assert logged["url"] == "http://h/mcp"


class TestResolveEnvVar:
    def test_resolves_full_pattern(self, monkeypatch):
        monkeypatch.setenv("TOOLMESH_TEST_TOKEN", "abc")
        assert resolve_env_var("${TOOLMESH_TEST_TOKEN}") == "abc"

    def test_partial_pattern_is_literal(self):
        assert resolve_env_var("prefix-${VAR}") == "prefix-${VAR}"

    def test_missing_required_raises(self, monkeypatch):
        monkeypatch.delenv("TOOLMESH_MISSING", raising=False)
        with pytest.raises(ValueError, match="TOOLMESH_MISSING"):
            resolve_env_var("${TOOLMESH_MISSING}")

    def test_missing_optional_is_none(self, monkeypatch):
        monkeypatch.delenv("TOOLMESH_MISSING", raising=False)
        assert resolve_env_var("${TOOLMESH_MISSING}", required=False) is None


class TestAppSettings:
    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MCP_CALL_TIMEOUT", "7.5")
        monkeypatch.setenv("MCP_MAX_RETRIES", "2")
        monkeypatch.setenv("FEATURE_MCP_AUTO_RECONNECT_ENABLED", "true")
        settings = AppSettings()
        assert settings.mcp_call_timeout == 7.5
        assert settings.mcp_max_retries == 2
        assert settings.feature_mcp_auto_reconnect_enabled is True

    def test_defaults(self, monkeypatch):
        for var in ("MCP_LIVENESS_FAILURE_THRESHOLD", "MCP_MAX_PARALLEL_CONNECTS"):
            monkeypatch.delenv(var, raising=False)
        settings = AppSettings(_env_file=None)
        assert settings.mcp_liveness_failure_threshold == 3
        assert settings.mcp_max_parallel_connects >= 1


class TestConfigManager:
    def test_search_paths_include_package_defaults(self):
        cm = ConfigManager()
        str_paths = [str(p) for p in cm._search_paths("mcp.json")]
        assert any("toolmesh/config/mcp.json" in s for s in str_paths)

    def test_read_servers_file(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text(json.dumps({"mcpServers": {"a": {"transport": "process", "command": "x"}}}))
        raw = ConfigManager().read_servers_file(path)
        assert list(parse_servers_config(raw)) == ["a"]

    def test_read_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigManager().read_servers_file(tmp_path / "nope.json")

    def test_read_malformed_file(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError, match="JSON parsing error"):
            ConfigManager().read_servers_file(path)

    def test_read_non_object_file(self, tmp_path):
        path = tmp_path / "mcp.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError, match="expected object"):
            ConfigManager().read_servers_file(path)

    def test_shipped_config_is_valid(self):
        cm = ConfigManager()
        path = cm._package_root / "config" / "mcp.json"
        servers = parse_servers_config(cm.read_servers_file(path))
        assert "echo" in servers
