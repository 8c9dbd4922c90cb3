"""Tests for the ToolRegistry catalog."""

import pytest

from toolmesh.domain.errors import UnknownTool
from toolmesh.domain.mcp.models import Tool, make_tool_id
from toolmesh.modules.mcp_tools.registry import ToolRegistry


def _tool(server, name):
    return Tool(id=make_tool_id(server, name), server_name=server, name=name, description=f"{name} on {server}")


class _ToolState:
    def __init__(self, disabled=(), broken=False):
        self.disabled = set(disabled)
        self.broken = broken

    def is_tool_enabled(self, server_name, tool_name):
        if self.broken:
            raise RuntimeError("storage offline")
        return (server_name, tool_name) not in self.disabled


def test_same_tool_name_on_two_servers_stays_distinct():
    reg = ToolRegistry()
    reg.rebuild(["A", "B"], {"A": [_tool("A", "search")], "B": [_tool("B", "search")]})

    assert [t.id for t in reg.list()] == ["A:search", "B:search"]
    assert reg.resolve("A:search") == ("A", "search")
    assert reg.resolve("B:search") == ("B", "search")


def test_order_is_declaration_then_name():
    reg = ToolRegistry()
    reg.rebuild(
        ["zeta", "alpha"],
        {"alpha": [_tool("alpha", "b"), _tool("alpha", "a")], "zeta": [_tool("zeta", "y"), _tool("zeta", "x")]},
    )
    assert [t.id for t in reg.list()] == ["zeta:x", "zeta:y", "alpha:a", "alpha:b"]
    assert reg.server_names() == ["zeta", "alpha"]


def test_unconnected_servers_contribute_nothing():
    reg = ToolRegistry()
    reg.rebuild(["A", "B"], {"A": [_tool("A", "t")]})
    assert reg.for_server("B") == []
    assert reg.count_for("B") == 0
    assert "B:t" not in reg


def test_unknown_tool():
    reg = ToolRegistry()
    reg.rebuild(["A"], {"A": [_tool("A", "t")]})
    assert reg.get("A:missing") is None
    with pytest.raises(UnknownTool) as exc_info:
        reg.resolve("A:missing")
    assert exc_info.value.tool_id == "A:missing"


def test_duplicate_tool_names_keep_first(caplog):
    reg = ToolRegistry()
    first = _tool("A", "t")
    reg.rebuild(["A"], {"A": [first, Tool(id="A:t", server_name="A", name="t", description="second")]})
    assert len(reg) == 1
    assert reg.get("A:t").description == first.description
    assert "Duplicate tool id" in caplog.text


def test_disabled_tools_are_listed_but_never_resolve():
    reg = ToolRegistry(_ToolState(disabled={("A", "secret")}))
    reg.rebuild(["A"], {"A": [_tool("A", "secret"), _tool("A", "public")]})

    assert [t.id for t in reg.list()] == ["A:public"]
    assert [t.id for t in reg.list(include_disabled=True)] == ["A:public", "A:secret"]
    assert reg.get("A:secret") is None
    with pytest.raises(UnknownTool):
        reg.resolve("A:secret")
    assert reg.count_for("A") == 1


def test_failing_tool_state_counts_as_enabled():
    reg = ToolRegistry(_ToolState(broken=True))
    reg.rebuild(["A"], {"A": [_tool("A", "t")]})
    assert "A:t" in reg


def test_rebuild_replaces_catalog():
    reg = ToolRegistry()
    reg.rebuild(["A"], {"A": [_tool("A", "t")]})
    reg.rebuild(["A"], {})
    assert len(reg) == 0
    assert list(reg) == []
