"""Tests for core/logging_config: redaction, StructuredFormatter, setup_logging."""

import json
import logging
import sys

from chatbridge.core.logging_config import StructuredFormatter, _redact, setup_logging


def _record(msg: str, level: int = logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test",
        level=level,
        pathname="",
        lineno=0,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_string_with_token():
    assert _redact("bearer abc123") == "[REDACTED]"
    assert _redact("token=xyz") == "[REDACTED]"
    assert _redact("hello") == "hello"


def test_redact_by_key():
    assert _redact("xoxb-1", "bot_token") == "[REDACTED]"
    assert _redact({"sasl_password": "pw", "nick": "bot"}) == {"sasl_password": "[REDACTED]", "nick": "bot"}


def test_redact_dict_recursive():
    assert _redact({"k": "token: x"}) == {"k": "[REDACTED]"}
    assert _redact({"a": "normal"}) == {"a": "normal"}
    assert _redact({"outer": {"Authorization": "abc"}}) == {"outer": {"Authorization": "[REDACTED]"}}


def test_redact_list():
    assert _redact(["bearer x"]) == ["[REDACTED]"]
    assert _redact(("ok", 1)) == ["ok", 1]


def test_structured_formatter_json():
    fmt = StructuredFormatter(use_json=True)
    data = json.loads(fmt.format(_record("hello")))
    assert data["message"] == "hello"
    assert data["level"] == "INFO"
    assert data["logger"] == "test"


def test_structured_formatter_extra_fields():
    fmt = StructuredFormatter(use_json=True)
    data = json.loads(fmt.format(_record("service started", service="libera", refresh_token="rt-secret")))
    assert data["service"] == "libera"
    assert data["refresh_token"] == "[REDACTED]"
    assert "rt-secret" not in fmt.format(_record("x", refresh_token="rt-secret"))


def test_structured_formatter_key_value():
    fmt = StructuredFormatter(use_json=False)
    out = fmt.format(_record("warn", level=logging.WARNING, channel="#chan"))
    assert "warn" in out
    assert "WARNING" in out
    assert "channel='#chan'" in out


def test_structured_formatter_with_exc_info():
    fmt = StructuredFormatter(use_json=True)
    try:
        raise ValueError("test error")
    except ValueError:
        exc_info = sys.exc_info()
    data = json.loads(fmt.format(_record("failed", level=logging.ERROR, exc_info=exc_info)))
    assert "exception" in data
    assert "ValueError" in data["exception"] or "test error" in data["exception"]


def test_setup_logging():
    setup_logging(level="INFO", use_json=True)
    root = logging.getLogger()
    assert root.level == logging.INFO
    assert logging.getLogger("httpx").level == logging.WARNING
    # Under pytest, root.handlers[0] may be pytest's (ColoredLevelFormatter); find ours
    structured = [
        h for h in root.handlers if isinstance(getattr(h, "formatter", None), StructuredFormatter)
    ]
    if structured:
        assert structured[0].formatter.use_json is True


def test_setup_logging_level_warning():
    setup_logging(level="WARNING", use_json=False)
    root = logging.getLogger()
    assert root.level == logging.WARNING
