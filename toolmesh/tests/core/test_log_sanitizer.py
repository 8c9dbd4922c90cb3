from toolmesh.core.log_sanitizer import sanitize_for_logging, summarize_server_config_for_logging


def test_sanitize_strips_newlines_and_control_chars():
    assert sanitize_for_logging("a\r\nb\nc") == "abc"
    assert sanitize_for_logging("Test\x1b[31mRed") == "Test[31mRed"
    assert sanitize_for_logging("Fake\u2028Log") == "FakeLog"


def test_sanitize_non_strings():
    assert sanitize_for_logging(None) == ""
    assert sanitize_for_logging(123) == "123"


def test_summarize_masks_secret_fields():
    summary = summarize_server_config_for_logging({
        "transport": "process",
        "command": "python",
        "env": {"API_TOKEN": "secret"},
        "api_key": "sk-123",
        "cwd": None,
    })
    assert summary["command"] == "python"
    assert summary["env"] == {"API_TOKEN": "***"}
    assert summary["api_key"] == "***"
    assert summary["cwd"] is None
