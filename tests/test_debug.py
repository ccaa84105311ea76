"""Tests for the debug instrumentation module."""

import logging

import pytest

from snipt_bridge.debug import (
    CallMetrics,
    _format_value,
    _truncate,
    clear_request_id,
    configure_debug_logging,
    disable_debug,
    enable_debug,
    format_args,
    get_request_id,
    is_debug_enabled,
    mask_secret,
    set_request_id,
)


class TestDebugState:
    """Tests for debug enable/disable state."""

    def test_is_debug_enabled_default_false(self, monkeypatch):
        """Debug should be disabled by default."""
        monkeypatch.delenv("SNIPT_BRIDGE_DEBUG", raising=False)
        disable_debug()
        assert is_debug_enabled() is False

    def test_enable_debug_programmatically(self, monkeypatch):
        """enable_debug() should enable debug mode."""
        monkeypatch.delenv("SNIPT_BRIDGE_DEBUG", raising=False)
        disable_debug()
        enable_debug()
        assert is_debug_enabled() is True
        disable_debug()

    @pytest.mark.parametrize("env_value", ["1", "true", "yes", "TRUE"])
    def test_debug_enabled_via_env_var(self, monkeypatch, env_value):
        """SNIPT_BRIDGE_DEBUG env var should enable debug mode."""
        disable_debug()
        monkeypatch.setenv("SNIPT_BRIDGE_DEBUG", env_value)
        assert is_debug_enabled() is True

    @pytest.mark.parametrize("env_value", ["0", "false", ""])
    def test_debug_disabled_via_env_var(self, monkeypatch, env_value):
        """Other SNIPT_BRIDGE_DEBUG values leave debug off."""
        disable_debug()
        monkeypatch.setenv("SNIPT_BRIDGE_DEBUG", env_value)
        assert is_debug_enabled() is False


class TestRequestId:
    """Tests for request id correlation."""

    def test_get_request_id_creates_one(self):
        clear_request_id()
        req_id = get_request_id()
        assert len(req_id) == 8
        assert get_request_id() == req_id
        clear_request_id()

    def test_set_and_reset_request_id(self):
        """Resetting with the token restores the previous id."""
        clear_request_id()
        outer = set_request_id("outer")
        inner = set_request_id("inner")
        assert get_request_id() == "inner"
        clear_request_id(inner)
        assert get_request_id() == "outer"
        clear_request_id(outer)


class TestCallMetrics:
    """Tests for CallMetrics timing and logging."""

    def test_elapsed_ms_after_complete(self):
        metrics = CallMetrics(tool_name="search", start_time=1.0)
        metrics.end_time = 1.25
        assert metrics.elapsed_ms == pytest.approx(250.0)

    def test_failure_logs_error(self, caplog):
        metrics = CallMetrics(tool_name="fetch", grant_kind="oauth", request_id="abc")
        metrics.complete(success=False, error="Snippet not found")
        with caplog.at_level(logging.ERROR, logger="snipt_bridge.debug"):
            metrics.log()
        assert "FAIL [req=abc grant=oauth] fetch" in caplog.text
        assert "Snippet not found" in caplog.text

    def test_slow_call_logs_warning(self, caplog):
        metrics = CallMetrics(tool_name="search", start_time=0.0)
        metrics.complete()
        metrics.start_time = metrics.end_time - 2.0
        with caplog.at_level(logging.WARNING, logger="snipt_bridge.debug"):
            metrics.log()
        assert "SLOW" in caplog.text
        assert "grant=default" in caplog.text

    def test_fast_call_silent_unless_debug(self, caplog, monkeypatch):
        monkeypatch.delenv("SNIPT_BRIDGE_DEBUG", raising=False)
        disable_debug()
        metrics = CallMetrics(tool_name="search")
        metrics.complete()
        with caplog.at_level(logging.DEBUG, logger="snipt_bridge.debug"):
            metrics.log()
        assert "DONE" not in caplog.text

        enable_debug()
        try:
            with caplog.at_level(logging.DEBUG, logger="snipt_bridge.debug"):
                metrics.log()
        finally:
            disable_debug()
        assert "DONE" in caplog.text


class TestFormatting:
    """Tests for log formatting helpers."""

    def test_truncate(self):
        assert _truncate("short") == "short"
        assert _truncate("x" * 200, 20) == "x" * 17 + "..."

    def test_format_value(self):
        assert _format_value(None) == "None"
        assert _format_value("hi") == "'hi'"
        assert _format_value({"a": 1}) == '{"a": 1}'

    def test_format_args(self):
        assert format_args({}) == "{}"
        assert format_args({"query": "git", "limit": 5}) == "{query='git', limit=5}"

    def test_mask_secret(self):
        """Secrets are never shown whole."""
        assert mask_secret(None) == "None"
        assert mask_secret("short") == "***"
        masked = mask_secret("snip_abcdefghijklmnopqrstuvwxyz")
        assert masked == "snip_a...wxyz"
        assert "klmnop" not in masked


class TestConfigureLogging:
    def test_installs_single_handler(self):
        bridge_logger = logging.getLogger("snipt_bridge")
        saved = list(bridge_logger.handlers)
        bridge_logger.handlers.clear()
        try:
            configure_debug_logging(logging.INFO)
            configure_debug_logging(logging.INFO)
            assert len(bridge_logger.handlers) == 1
            assert bridge_logger.level == logging.INFO
        finally:
            bridge_logger.handlers[:] = saved
