"""Tests for core.metrics_logger module."""

import logging
from unittest.mock import MagicMock, patch

from toolmesh.core.metrics_logger import log_metric


def _patch_config(enabled: bool):
    mock_cm = MagicMock()
    mock_cm.app_settings.feature_metrics_logging_enabled = enabled
    return patch("toolmesh.modules.config.config_manager", mock_cm)


class TestLogMetric:
    def test_logs_when_enabled(self, caplog):
        with _patch_config(True):
            with caplog.at_level(logging.INFO, logger="toolmesh.core.metrics_logger"):
                log_metric("mcp_connect", server="calc", success=True, elapsed_ms=41)
        assert "[METRIC] [system] mcp_connect" in caplog.text
        assert "server=calc" in caplog.text
        assert "success=True" in caplog.text
        assert "elapsed_ms=41" in caplog.text

    def test_suppressed_when_disabled(self, caplog):
        with _patch_config(False):
            with caplog.at_level(logging.INFO, logger="toolmesh.core.metrics_logger"):
                log_metric("tool_call", "user@example.com", tool_id="calc:add")
        assert "[METRIC]" not in caplog.text

    def test_user_is_included(self, caplog):
        with _patch_config(True):
            with caplog.at_level(logging.INFO, logger="toolmesh.core.metrics_logger"):
                log_metric("tool_call", "user@example.com", tool_id="calc:add")
        assert "[user@example.com]" in caplog.text

    def test_values_are_sanitized(self, caplog):
        with _patch_config(True):
            with caplog.at_level(logging.INFO, logger="toolmesh.core.metrics_logger"):
                log_metric("tool_call", tool_id="calc:add\nFAKE LINE")
        assert "tool_id=calc:addFAKE LINE" in caplog.text
