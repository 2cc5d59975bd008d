"""
Unit tests for logging configuration
"""
import json
import logging
import uuid

from simplicam.core.logging_config import (
    setup_logging,
    get_logger,
    set_session_id,
    get_session_id,
    clear_session_id,
    sanitize_log_value,
    CustomJsonFormatter,
    SessionIdFilter,
    SanitizingFilter,
)


def _record(msg="Test message", args=(), name="test"):
    return logging.LogRecord(
        name=name,
        level=logging.INFO,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None
    )


class TestSessionIdContext:
    """Stream session ID context variable"""

    def test_set_and_get_session_id(self):
        test_id = str(uuid.uuid4())
        token = set_session_id(test_id)

        assert get_session_id() == test_id

        clear_session_id(token)

    def test_clear_session_id_resets_context(self):
        """clear_session_id should restore the previous value"""
        original_id = str(uuid.uuid4())
        token1 = set_session_id(original_id)

        token2 = set_session_id(str(uuid.uuid4()))
        clear_session_id(token2)
        assert get_session_id() == original_id

        clear_session_id(token1)


class TestSessionIdFilter:
    """Session ID logging filter"""

    def test_filter_adds_session_id_to_record(self):
        record = _record()
        test_id = str(uuid.uuid4())
        token = set_session_id(test_id)

        result = SessionIdFilter().filter(record)

        assert result is True
        assert record.session_id == test_id

        clear_session_id(token)

    def test_filter_uses_dash_when_no_session_id(self):
        token = set_session_id(None)
        record = _record()

        SessionIdFilter().filter(record)

        assert record.session_id == "-"
        clear_session_id(token)


class TestSanitizingFilter:
    """Log sanitization filter"""

    def test_filter_removes_newlines(self):
        record = _record(msg="frame=1\nframe=2\nframe=3")

        SanitizingFilter().filter(record)

        assert record.msg == "frame=1 frame=2 frame=3"

    def test_filter_sanitizes_args(self):
        record = _record(msg="Camera name: %s", args=("Front\r\nDoor",))

        SanitizingFilter().filter(record)

        assert record.args[0] == "Front Door"


class TestSanitizeLogValue:
    """sanitize_log_value helper"""

    def test_sanitize_removes_newlines(self):
        assert sanitize_log_value("hello\nworld") == "hello world"

    def test_sanitize_truncates_to_max_length(self):
        result = sanitize_log_value("a" * 50, max_length=10)

        assert result == "a" * 10 + "...[truncated]"

    def test_sanitize_handles_non_strings(self):
        assert sanitize_log_value(12345) == "12345"


class TestCustomJsonFormatter:
    """Custom JSON log formatter"""

    def test_formatter_produces_valid_json(self):
        formatter = CustomJsonFormatter()
        record = _record(name="simplicam.services.stream_supervisor")
        record.session_id = "session-uuid"

        parsed = json.loads(formatter.format(record))

        assert "timestamp" in parsed
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Test message"
        assert parsed["logger"] == "simplicam.services.stream_supervisor"
        assert parsed["session_id"] == "session-uuid"

    def test_formatter_includes_extra_fields(self):
        formatter = CustomJsonFormatter()
        record = _record(msg="Stream started")
        record.camera_id = "cam-001"
        record.pid = 4242

        parsed = json.loads(formatter.format(record))

        assert parsed.get("camera_id") == "cam-001"
        assert parsed.get("pid") == 4242


class TestSetupLogging:
    """setup_logging"""

    def test_setup_logging_respects_log_level(self, tmp_path):
        logger = setup_logging(log_level="WARNING", log_dir=str(tmp_path))

        assert isinstance(logger, logging.Logger)
        assert logging.getLogger().level == logging.WARNING
        assert (tmp_path / "simplicam.log").exists()

        setup_logging(log_level="INFO", log_dir=str(tmp_path))

    def test_setup_logging_quiets_third_party(self, tmp_path):
        setup_logging(log_level="DEBUG", log_dir=str(tmp_path))

        assert logging.getLogger("pyhap").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

        setup_logging(log_level="INFO", log_dir=str(tmp_path))


class TestGetLogger:
    def test_get_logger_returns_logger_instance(self):
        logger = get_logger("test.module")

        assert isinstance(logger, logging.Logger)
        assert logger.name == "test.module"
