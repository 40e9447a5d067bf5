"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal

import pytest

from plant_api.middleware.json_formatter import JSONFormatter, configure_json_logging


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "test message", level: int = logging.INFO, name: str = "test.logger", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=extra.pop("exc_info", None),
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "+00:00" in data["timestamp"]

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("warn\nmsg", logging.WARNING))

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record(
            "request completed",
            name="plant_api.access",
            request={
                "method": "POST",
                "path": "/api/v1/trades",
                "status_code": 201,
                "duration_ms": 4.2,
                "user_id": "member-1",
                "role": "member",
            },
        )
        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/api/v1/trades"
        assert data["request"]["role"] == "member"
        assert "event" not in data

    def test_event_context_included(self, formatter: JSONFormatter) -> None:
        record = _record(
            "EVENT: payment.confirmed",
            event={"type": "payment.confirmed", "data": {"amount": Decimal("1500.00")}},
        )
        data = json.loads(formatter.format(record))

        assert data["event"]["type"] == "payment.confirmed"
        # Non-JSON values fall back to ``str``.
        assert data["event"]["data"]["amount"] == "1500.00"

    def test_other_extras_are_not_promoted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record(trade_id="t1")))
        assert "trade_id" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", logging.ERROR, exc_info=exc_info)))

        assert data["level"] == "ERROR"
        assert "Traceback" in data["exc_info"]
        assert "ValueError: test error" in data["exc_info"]


def test_configure_json_logging_replaces_root_handlers() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_json_logging(logging.DEBUG)
        [handler] = root.handlers
        assert isinstance(handler.formatter, JSONFormatter)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
