"""Tests for structured logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog

from daypulse.core.logging import (
    NOISE_LOGGERS,
    _user_context,
    add_otel_context,
    add_user_context,
    configure_logging,
    get_user_context,
    set_user_context,
)

pytestmark = pytest.mark.unit


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and user context between tests."""
    token = _user_context.set(None)
    yield
    _user_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# ContextVar accessors
# ---------------------------------------------------------------------------


class TestUserContext:
    def test_set_and_get(self):
        set_user_context("uid-1")
        assert get_user_context() == "uid-1"

    def test_default_is_none(self):
        assert get_user_context() is None


class TestAddUserContext:
    def test_injects_user_id(self):
        set_user_context("uid-1")
        result = add_user_context(None, "info", {"event": "test"})
        assert result["user_id"] == "uid-1"

    def test_handles_unset_context(self):
        result = add_user_context(None, "info", {"event": "test"})
        assert result["user_id"] is None


# ---------------------------------------------------------------------------
# add_otel_context processor
# ---------------------------------------------------------------------------


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["trace_id"]) == 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfigure_replaces_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_sets_user_context(self):
        configure_logging(user_id="uid-7")
        assert get_user_context() == "uid-7"

    def test_noise_loggers_suppressed(self):
        configure_logging(level="DEBUG")
        for name in NOISE_LOGGERS:
            assert logging.getLogger(name).level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        configure_logging(level="chatty")
        assert logging.getLogger().level == logging.INFO

    def test_log_file_receives_json_events(self, tmp_path: Path):
        log_file = tmp_path / "logs" / "daypulse.log"
        configure_logging(log_file=log_file, user_id="uid-1")

        logging.getLogger("daypulse.test").warning("Calendar sync failed for '%s'", "team")
        for handler in logging.getLogger().handlers:
            handler.flush()

        [line] = log_file.read_text().splitlines()
        event = json.loads(line)
        assert event["event"] == "Calendar sync failed for 'team'"
        assert event["level"] == "warning"
        assert event["user_id"] == "uid-1"
        assert event["logger"] == "daypulse.test"
