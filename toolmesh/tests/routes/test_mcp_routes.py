"""Tests for the /api/mcp routes."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest
from starlette.testclient import TestClient

from toolmesh.main import create_app
from toolmesh.modules.mcp_tools.client import MCPConnectionManager


def _entry(**extra):
    return {"transport": "process", "command": "in-memory", **extra}


@pytest.fixture
def manager(settings, connector_factory):
    return MCPConnectionManager(settings=settings, connectors={"process": connector_factory("A", "B", fail={"B"})})


@pytest.fixture
def client(manager):
    app = create_app(manager=manager, load_config=False)
    with TestClient(app) as client:
        client.portal.call(manager.set_config, {"A": _entry(), "B": _entry()})
        yield client


def test_status_before_connect(client):
    resp = client.get("/api/mcp/status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["servers"]["A"] == {"status": "disconnected", "toolCount": 0}
    assert data["lastConnectionResults"] == []


def test_connect_reports_each_server(client):
    resp = client.post("/api/mcp/connect")
    assert resp.status_code == 200
    data = resp.json()
    results = {r["server"]: r for r in data["results"]}
    assert results["A"]["success"] is True
    assert results["B"]["success"] is False
    assert data["status"]["A"]["status"] == "connected"
    assert data["status"]["B"]["status"] == "error"
    assert "refused" in data["status"]["B"]["lastError"]


def test_list_and_call_tools(client):
    client.post("/api/mcp/connect")

    tools = client.get("/api/mcp/tools").json()["tools"]
    assert "A:echo" in [t["id"] for t in tools]
    assert client.get("/api/mcp/tools", params={"server": "B"}).json() == {"tools": []}

    resp = client.post("/api/mcp/call-tool", json={"toolId": "A:echo", "arguments": {"text": "hi"}})
    assert resp.status_code == 200
    assert resp.json()["toolId"] == "A:echo"
    assert {"type": "text", "text": "A:hi"} in [
        {"type": b["type"], "text": b.get("text")} for b in resp.json()["content"]
    ]


def test_call_tool_error_mapping(client):
    client.post("/api/mcp/connect")

    resp = client.post("/api/mcp/call-tool", json={"toolId": "A:nope"})
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "unknown_tool"

    resp = client.post("/api/mcp/call-tool", json={"toolId": "B:echo", "arguments": {"text": "x"}})
    assert resp.status_code == 503
    assert resp.json()["detail"]["retryable"] is True

    resp = client.post("/api/mcp/call-tool", json={"toolId": "A:boom"})
    assert resp.status_code == 502
    assert resp.json()["detail"]["code"] == "tool_error"

    resp = client.post("/api/mcp/call-tool", json={"arguments": {}})
    assert resp.status_code == 422


def test_connect_and_disconnect_one_server(client):
    assert client.post("/api/mcp/servers/Z/connect").status_code == 404

    resp = client.post("/api/mcp/servers/A/connect")
    assert resp.status_code == 200
    assert resp.json()["success"] is True

    resp = client.post("/api/mcp/servers/A/disconnect")
    assert resp.status_code == 200
    assert resp.json()["status"]["status"] == "disconnected"


def test_connect_disabled_server_conflicts(client, manager):
    client.portal.call(manager.set_config, {"A": _entry(enabled=False)})
    resp = client.post("/api/mcp/servers/A/connect")
    assert resp.status_code == 409


def test_validate(client):
    resp = client.post("/api/mcp/validate", json={"mcpServers": {"A": _entry(), "W": {"transport": "ws", "url": "ws://h"}}})
    assert resp.json() == {
        "valid": True,
        "servers": {"A": {"transport": "process", "enabled": True}, "W": {"transport": "socket", "enabled": True}},
    }

    resp = client.post("/api/mcp/validate", json={"A": {"transport": "process"}, "B": {"transport": "nope"}})
    data = resp.json()
    assert data["valid"] is False
    assert len(data["errors"]) == 2


def test_reload(client, manager, tmp_path):
    path = tmp_path / "mcp.json"
    path.write_text(json.dumps({"mcpServers": {"A": _entry()}}))
    mock_cm = MagicMock()
    mock_cm.find_mcp_config_file.return_value = path

    with patch("toolmesh.routes.mcp_routes.config_manager", mock_cm):
        resp = client.post("/api/mcp/reload")

    assert resp.status_code == 200
    data = resp.json()
    assert data["servers"] == ["A"]
    assert data["status"]["A"]["status"] == "connected"
    mock_cm.reload_mcp_config.assert_called_once()


def test_reload_rejects_invalid_file(client, manager, tmp_path):
    path = tmp_path / "mcp.json"
    path.write_text(json.dumps({"A": {"transport": "teleport"}}))
    mock_cm = MagicMock()
    mock_cm.find_mcp_config_file.return_value = path

    with patch("toolmesh.routes.mcp_routes.config_manager", mock_cm):
        resp = client.post("/api/mcp/reload")

    assert resp.status_code == 422
    assert resp.json()["detail"]["errors"]
    assert manager.server_names == ["A", "B"]


def test_manager_missing_returns_503():
    app = create_app(manager=None, load_config=False)
    # No lifespan: the manager is never created
    client = TestClient(app)
    assert client.get("/api/mcp/status").status_code == 503


def test_call_tool_records_caller_in_metrics(client, caplog):
    client.post("/api/mcp/connect")
    mock_cm = MagicMock()
    mock_cm.app_settings.feature_metrics_logging_enabled = True

    with patch("toolmesh.modules.config.config_manager", mock_cm):
        with caplog.at_level(logging.INFO, logger="toolmesh.core.metrics_logger"):
            resp = client.post(
                "/api/mcp/call-tool",
                json={"toolId": "A:echo", "arguments": {"text": "hi"}},
                headers={"X-User-Email": "alice@example.com"},
            )
            client.post("/api/mcp/call-tool", json={"toolId": "A:echo", "arguments": {"text": "anon"}})

    assert resp.status_code == 200
    metric_lines = [r.getMessage() for r in caplog.records if "tool_call" in r.getMessage()]
    assert len(metric_lines) == 2
    assert metric_lines[0].startswith("[METRIC] [alice@example.com] tool_call")
    assert "tool_id=A:echo" in metric_lines[0]
    assert metric_lines[1].startswith("[METRIC] [system] tool_call")


def test_call_tool_can_connect_on_demand(client):
    resp = client.post("/api/mcp/call-tool", json={"toolId": "A:echo", "arguments": {"text": "x"}})
    assert resp.status_code == 503

    resp = client.post("/api/mcp/call-tool", json={"toolId": "A:echo", "arguments": {"text": "x"}, "connect": True})
    assert resp.status_code == 200
    assert client.get("/api/mcp/status").json()["servers"]["A"]["status"] == "connected"

    resp = client.post("/api/mcp/call-tool", json={"toolId": "B:echo", "connect": True})
    assert resp.status_code == 503
