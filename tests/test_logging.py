"""Tests for structured logging configuration."""

import json
import logging
import sys
from unittest.mock import patch

from admission.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
    setup_logging,
)


def _record(msg: str = "Test message", level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        """Test basic JSON formatting."""
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        """Context fields are promoted to the top level."""
        record = _record("Rate limit exceeded")
        record.identifier = "203.0.113.9"
        record.tier = "restricted"
        record.backend = "redis"

        data = json.loads(JSONFormatter().format(record))

        assert data["identifier"] == "203.0.113.9"
        assert data["tier"] == "restricted"
        assert data["backend"] == "redis"
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        """Test JSON formatting with extra custom fields."""
        record = _record("Custom event")
        record.error_type = "ConnectionError"
        record.fail_closed = True

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"]["error_type"] == "ConnectionError"
        assert data["extra"]["fail_closed"] is True

    def test_json_format_with_exception(self):
        try:
            raise ValueError("Test error")
        except ValueError:
            record = _record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text

    def test_json_format_unicode(self):
        data = json.loads(JSONFormatter().format(_record("Identifier: 用户-ß 🚀")))
        assert "用户-ß 🚀" in data["message"]


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_default_fields(self):
        record = _record()

        assert ContextFilter().filter(record) is True
        for field in JSONFormatter.CONTEXT_FIELDS:
            assert hasattr(record, field)
        assert record.identifier is None

    def test_preserves_existing_values(self):
        record = _record()
        record.identifier = "apikey:abc"

        ContextFilter().filter(record)

        assert record.identifier == "apikey:abc"

    def test_defaults_are_not_reported_as_extra(self):
        record = _record()
        ContextFilter().filter(record)

        data = json.loads(JSONFormatter().format(record))

        assert "identifier" not in data
        assert "extra" not in data


class TestGetLoggingConfig:
    """Test logging configuration generation."""

    def test_default_text_format(self):
        with patch("admission.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "text"
            mock_settings.log_level = "INFO"

            config = get_logging_config()

        assert "standard" in config["formatters"]
        assert "json" not in config["formatters"]
        assert config["handlers"]["console"]["formatter"] == "standard"

    def test_structured_format(self):
        with patch("admission.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "structured"
            mock_settings.log_level = "debug"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "structured"
        assert config["handlers"]["console"]["level"] == "DEBUG"
        assert "%(identifier)s" in config["formatters"]["structured"]["format"]

    def test_json_format(self):
        with patch("admission.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "WARNING"

            config = get_logging_config()

        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["loggers"]["admission"]["level"] == "WARNING"

    def test_context_filter_added(self):
        config = get_logging_config()
        assert "context" in config["handlers"]["console"]["filters"]


class TestGetLogContext:
    """Test get_log_context helper function."""

    def test_basic_context(self):
        context = get_log_context(identifier="203.0.113.9", tier="standard", backend="memory")
        assert context == {"identifier": "203.0.113.9", "tier": "standard", "backend": "memory"}

    def test_context_filters_none(self):
        context = get_log_context(identifier="u1", tier=None, reason=None)
        assert context == {"identifier": "u1"}

    def test_context_with_extra(self):
        context = get_log_context(request_id="req-1", error_type="TimeoutError")
        assert context["request_id"] == "req-1"
        assert context["error_type"] == "TimeoutError"


class TestIntegration:
    """Integration tests for logging system."""

    def test_get_logger_default_name(self):
        assert get_logger().name == "admission"

    def test_json_logging_output(self, capsys):
        """Test actual JSON logging output."""
        with patch("admission.app.core.logging.settings") as mock_settings:
            mock_settings.log_format = "json"
            mock_settings.log_level = "INFO"

            setup_logging()

        logger = get_logger("admission.test")
        logger.warning(
            "Redis rate limit backend unavailable",
            extra=get_log_context(identifier="203.0.113.9", backend="redis"),
        )

        data = json.loads(capsys.readouterr().out.strip())

        assert data["level"] == "WARNING"
        assert data["logger"] == "admission.test"
        assert data["identifier"] == "203.0.113.9"
        assert data["backend"] == "redis"
