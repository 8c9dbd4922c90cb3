"""
Helpers for keeping untrusted values out of log structure.
"""

import logging
import re
from typing import Any, Dict, Mapping

logger = logging.getLogger(__name__)

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f-\x9f]')
# Matches Unicode line separators (LINE SEPARATOR and PARAGRAPH SEPARATOR)
_UNICODE_NEWLINES_RE = re.compile(r'[  ]')
# Matches explicit CR, LF, and CRLF for maximal coverage
_STANDARD_NEWLINES_RE = re.compile(r'(\r\n|\r|\n)')

# Config keys whose values are credentials or may carry them
_SECRET_KEYS = {"api_key", "apikey", "auth_token", "env", "headers"}


def sanitize_for_logging(value: Any) -> str:
    """
    Sanitize a value for safe logging by removing ALL newlines (including Unicode and CRLF)
    and control characters, to defend against log injection.

    Server names, URLs and error strings reported by tool servers all pass through
    here before reaching a log record.

    Args:
        value: Any value to sanitize. If not a string, it will be converted
               to string representation first.

    Returns:
        str: Sanitized string with all control and newline characters removed.

    Examples:
        >>> sanitize_for_logging("Hello\\nWorld")
        'HelloWorld'
        >>> sanitize_for_logging("Test\\x1b[31mRed\\x1b[0m")
        'TestRed'
        >>> sanitize_for_logging("Fake Log")
        'FakeLog'
        >>> sanitize_for_logging(None)
        ''
        >>> sanitize_for_logging(123)
        '123'
    """
    if value is None:
        return ''
    if not isinstance(value, str):
        value = str(value)
    value = _CONTROL_CHARS_RE.sub('', value)
    value = _UNICODE_NEWLINES_RE.sub('', value)
    value = _STANDARD_NEWLINES_RE.sub('', value)
    return value


def summarize_server_config_for_logging(config: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a copy of a server config dict that is safe to log.

    Credential-bearing fields keep their keys (so operators can see *what* was
    configured) but lose their values.

    Example:
        {"transport": "http", "api_key": "sk-123", "headers": {"X-Token": "abc"}}
        -> {"transport": "http", "api_key": "***", "headers": {"X-Token": "***"}}
    """
    summary: Dict[str, Any] = {}
    for key, value in config.items():
        if key.lower() not in _SECRET_KEYS or value is None:
            summary[key] = value
        elif isinstance(value, Mapping):
            summary[key] = {k: "***" for k in value}
        else:
            summary[key] = "***"
    return summary
