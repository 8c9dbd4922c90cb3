"""
Metrics logging for connection and tool-call activity without capturing sensitive data.

This module provides a centralized way to log activity metrics that:
- Use the [METRIC] prefix for easy filtering
- Include the caller (the X-User-Email identity) when one is known
- Only log metadata (counts, durations, names, outcomes)
- NEVER log tool arguments, tool results, or error details

Usage:
    from toolmesh.core.metrics_logger import log_metric

    log_metric("mcp_connect", server="calculator", success=True, elapsed_ms=41)
    log_metric("tool_call", caller, tool_id="calculator:evaluate", success=False)
"""

import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


def log_metric(
    event_type: str,
    caller: Optional[str] = None,
    **kwargs: Any
) -> None:
    """
    Log a metric event.

    This function respects the FEATURE_METRICS_LOGGING_ENABLED setting.
    When disabled, no metrics are logged.

    Args:
        event_type: Type of event (e.g., "mcp_connect", "tool_call", "mcp_liveness")
        caller: Identity of whoever triggered the event (sanitized); "system" if unknown
        **kwargs: Additional metadata to log (only non-sensitive data)
    """
    # Import here to avoid circular dependencies
    from toolmesh.core.log_sanitizer import sanitize_for_logging
    from toolmesh.modules.config import config_manager

    if not config_manager.app_settings.feature_metrics_logging_enabled:
        return

    sanitized_caller = sanitize_for_logging(caller) if caller else "system"

    parts = [f"[METRIC] [{sanitized_caller}] {event_type}"]

    if kwargs:
        metadata_parts = [
            f"{key}={sanitize_for_logging(value)}"
            for key, value in kwargs.items()
        ]
        parts.append(" ".join(metadata_parts))

    logger.info(" ".join(parts))
