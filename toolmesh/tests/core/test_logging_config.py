import json
import logging

from toolmesh.core.logging_config import JSONFormatter


def _record(msg, *args, **extra):
    record = logging.LogRecord("toolmesh.test", logging.WARNING, __file__, 10, msg, args, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_fields():
    line = JSONFormatter().format(_record("Server %s failed", "calc"))
    entry = json.loads(line)
    assert entry["message"] == "Server calc failed"
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "toolmesh.test"
    assert "trace_id" not in entry


def test_json_formatter_keeps_extras():
    entry = json.loads(JSONFormatter().format(_record("[MCP:calc] hello", mcp_server="calc")))
    assert entry["extra_mcp_server"] == "calc"
