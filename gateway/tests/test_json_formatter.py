"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from gateway.middleware.json_formatter import JSONFormatter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str, *args: object, level: int = logging.INFO, name: str = "test", exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("test message", name="test.logger")))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "+00:00" in data["timestamp"]

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        output = formatter.format(_record("line one\nline two", level=logging.WARNING))
        assert "\n" not in output

    def test_args_are_interpolated(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("Webhook %s processed for %s", "orders/create", "a.b.com")))
        assert data["message"] == "Webhook orders/create processed for a.b.com"

    def test_security_events_are_flagged(self, formatter: JSONFormatter) -> None:
        record = _record("SECURITY: webhook signature verification failed (topic=%s)", "orders/create")
        data = json.loads(formatter.format(record))
        assert data["security_event"] is True

    def test_ordinary_messages_not_flagged(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("Store write succeeded via primary client")))
        assert "security_event" not in data

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", name="gateway.access")
        record.request = {  # type: ignore[attr-defined]
            "method": "POST",
            "path": "/webhooks",
            "status_code": 200,
            "duration_ms": 1.5,
            "tenant_domain": "demo.myshopify.com",
        }
        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/webhooks"
        assert data["request"]["tenant_domain"] == "demo.myshopify.com"

    def test_no_request_context_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("plain msg")))
        assert "request" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", level=logging.ERROR, exc_info=exc_info)))

        assert data["level"] == "ERROR"
        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]
