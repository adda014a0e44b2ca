"""
Tests for StructuredLogger.
"""

import json
import logging
from io import StringIO

import pytest

from lifecycle_engine.logger import StructuredLogger, create_test_logger


@pytest.fixture
def capture(monkeypatch):
    """Returns (logger factory, buffer); the factory swaps handlers for the buffer."""
    buffer = StringIO()

    def _make(name: str, fmt: str = "readable") -> StructuredLogger:
        if fmt == "json":
            monkeypatch.setenv("LOG_FORMAT", "json")
        else:
            monkeypatch.delenv("LOG_FORMAT", raising=False)
        log = create_test_logger(name)
        log.logger.handlers.clear()
        log.logger.addHandler(logging.StreamHandler(buffer))
        log.logger.setLevel(logging.DEBUG)
        return log

    return _make, buffer


class TestStructuredLoggerBasic:

    def test_create_logger(self):
        log = create_test_logger("basic")
        assert log.name == "lifecycle_engine.basic"
        assert log.logger.propagate is False

    def test_set_user(self):
        log = create_test_logger("user")
        log.set_user("u1")
        assert log.user_id == "u1"
        log.clear_user()
        assert log.user_id is None

    def test_user_scope_restores(self):
        log = create_test_logger("scope")
        log.set_user("outer")
        with log.user_scope("inner"):
            assert log.user_id == "inner"
        assert log.user_id == "outer"
        log.clear_user()

    def test_format_structured(self):
        log = create_test_logger("format")
        log.set_context(version_id="v1")
        try:
            entry = log._format_structured("INFO", "hello", key="value")
        finally:
            log.clear_context()
        assert entry["message"] == "hello"
        assert entry["version_id"] == "v1"
        assert entry["key"] == "value"
        assert entry["timestamp"].endswith("Z")


class TestStructuredLoggerOutput:

    def test_readable(self, capture):
        make, buffer = capture
        log = make("readable")
        with log.user_scope("u7"):
            log.info("Tick done", state="NEW")
        assert "[u7] Tick done [state=NEW]" in buffer.getvalue()

    def test_json_event(self, capture):
        make, buffer = capture
        log = make("json_event", fmt="json")
        with log.user_scope("u7"):
            log.event("fsm_transition_committed", to_state="PAID_ACTIVE")

        record = json.loads(buffer.getvalue().strip())
        assert record["level"] == "EVENT"
        assert record["message"] == "fsm_transition_committed"
        assert record["user_id"] == "u7"
        assert record["to_state"] == "PAID_ACTIVE"

    def test_json_metric(self, capture):
        make, buffer = capture
        log = make("json_metric", fmt="json")
        log.metric("rules_matched", 2, trigger="LOW_BALANCE")
        record = json.loads(buffer.getvalue().strip())
        assert record["level"] == "METRIC"
        assert record["value"] == 2

    def test_exception_json(self, capture):
        make, buffer = capture
        log = make("json_exc", fmt="json")
        try:
            raise ValueError("boom")
        except ValueError:
            log.exception("Handler crashed", action="TAG_USER")
        record = json.loads(buffer.getvalue().strip())
        assert record["level"] == "ERROR"
        assert "ValueError: boom" in record["traceback"]

    def test_levels(self, capture):
        make, buffer = capture
        log = make("levels")
        log.debug("d")
        log.warning("w")
        log.error("e")
        assert buffer.getvalue().splitlines() == ["d", "w", "e"]
