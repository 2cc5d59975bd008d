"""
JSON logging for the camera bridge.

Every record carries the HomeKit stream session being handled (from a
contextvar set around stream requests), so the lines of one session can be
followed across the negotiator, the supervisor and the ffmpeg stderr relay.

Output goes to the console, to simplicam.log and, for errors only, to
error.log. Both files rotate. The bridge host calls setup_logging once at
startup; library code only uses module loggers.
"""
import contextvars
import logging
import logging.handlers
import os
from datetime import datetime, timezone
from typing import Any, Optional

from pythonjsonlogger import jsonlogger

from simplicam.core.config import settings

session_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'session_id', default=None
)

DEFAULT_LOG_DIR = os.path.join(os.getcwd(), 'data', 'logs')
LOG_FORMAT = '%(timestamp)s %(level)s %(name)s %(message)s'

# Libraries that log every request or characteristic write at INFO/DEBUG
NOISY_LOGGERS = ('httpx', 'httpcore', 'pyhap')


def _flatten_newlines(value: str) -> str:
    return value.replace('\r\n', ' ').replace('\n', ' ').replace('\r', ' ')


class SessionIdFilter(logging.Filter):
    """Stamps each record with the current stream session id ("-" outside a session)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_id_var.get() or "-"
        return True


class SanitizingFilter(logging.Filter):
    """
    Flattens newlines in messages and string arguments.

    ffmpeg stderr lines and user-chosen camera names end up in log messages;
    a newline in either would forge a separate log entry.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _flatten_newlines(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                _flatten_newlines(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding timestamp, level, logger, module and session_id.

    Fields passed through ``extra`` (camera_id, exit_code, pid, ...) are
    emitted as top-level keys.
    """

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['session_id'] = getattr(record, 'session_id', '-')
        log_record.setdefault('message', record.getMessage())


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    handler.addFilter(SessionIdFilter())
    handler.addFilter(SanitizingFilter())
    return handler


def setup_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
    app_version: Optional[str] = None
) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        log_level: Level name; defaults to settings.LOG_LEVEL (DEBUG when
            settings.DEBUG is set)
        log_dir: Directory for log files; defaults to settings.LOG_DIR, then
            ./data/logs
        app_version: Version reported in the startup line

    Returns:
        The configured root logger
    """
    level_name = log_level or ("DEBUG" if settings.DEBUG else settings.LOG_LEVEL)
    level = getattr(logging, level_name.upper(), logging.INFO)
    directory = log_dir or settings.LOG_DIR or DEFAULT_LOG_DIR
    os.makedirs(directory, exist_ok=True)

    formatter = CustomJsonFormatter(LOG_FORMAT)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    root_logger.addHandler(_handler(logging.StreamHandler(), level, formatter))
    root_logger.addHandler(_handler(
        logging.handlers.RotatingFileHandler(
            os.path.join(directory, 'simplicam.log'),
            maxBytes=20 * 1024 * 1024,
            backupCount=5,
            encoding='utf-8',
        ),
        level,
        formatter,
    ))
    root_logger.addHandler(_handler(
        logging.handlers.RotatingFileHandler(
            os.path.join(directory, 'error.log'),
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding='utf-8',
        ),
        logging.ERROR,
        formatter,
    ))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if app_version:
        root_logger.debug(
            f"Logging configured for simplicam {app_version}",
            extra={"event_type": "logging_configured", "log_dir": directory, "log_level": level_name}
        )
    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Module logger; use with __name__."""
    return logging.getLogger(name)


def set_session_id(session_id: Optional[str]) -> contextvars.Token:
    """
    Mark the current context as handling a stream session.

    Returns:
        Token for clear_session_id
    """
    return session_id_var.set(session_id)


def get_session_id() -> Optional[str]:
    return session_id_var.get()


def clear_session_id(token: contextvars.Token) -> None:
    """Restore the session id that was current before set_session_id."""
    session_id_var.reset(token)


def sanitize_log_value(value: Any, max_length: int = 10000) -> str:
    """
    Make an untrusted value (ffmpeg output, camera name) safe to log.

    Newlines become spaces and long strings are truncated with a marker.
    Non-string values are returned as str() unchanged.
    """
    if not isinstance(value, str):
        return str(value)
    sanitized = _flatten_newlines(value)
    if len(sanitized) > max_length:
        return sanitized[:max_length] + '...[truncated]'
    return sanitized
