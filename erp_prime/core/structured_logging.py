"""
Structured Logging for ERP PRIME

Provides JSON-formatted logging with the realtime session id attached,
so the lines of one connection lifecycle can be correlated.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

_session_id: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_session_id() -> Optional[str]:
    """Get current session ID."""
    return _session_id.get()


def set_session_id(session_id: Optional[str]) -> None:
    """Set session ID for current context."""
    _session_id.set(session_id)


def generate_session_id() -> str:
    """Generate a short session ID."""
    return str(uuid.uuid4())[:8]


class JSONFormatter(logging.Formatter):
    """
    JSON log formatter for structured logging.

    Outputs log records as JSON objects with standardized fields.
    """

    STANDARD_FIELDS = {
        "timestamp",
        "level",
        "logger",
        "message",
        "session_id",
        "correlation_id",
    }

    # Attributes every LogRecord carries; anything else came in via ``extra``
    _RECORD_ATTRS = set(
        logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
    ) | {"message", "asctime"}

    def __init__(
        self,
        *,
        include_timestamp: bool = True,
        include_traceback: bool = True,
        extra_fields: Optional[Dict[str, Any]] = None,
        indent: Optional[int] = None,
    ):
        """
        Initialize JSON formatter.

        Args:
            include_timestamp: Include ISO timestamp
            include_traceback: Include traceback for exceptions
            extra_fields: Additional fields to include in every log
            indent: JSON indent (None for compact)
        """
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_traceback = include_traceback
        self.extra_fields = extra_fields or {}
        self.indent = indent

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = (
                datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            )

        log_data["level"] = record.levelname
        log_data["logger"] = record.name
        log_data["message"] = record.getMessage()

        log_data["source"] = {
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
        }

        if session_id := get_session_id():
            log_data["session_id"] = session_id
        if correlation_id := _correlation_id.get():
            log_data["correlation_id"] = correlation_id

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            log_data["exception"] = {
                "type": exc_type.__name__ if exc_type else None,
                "message": str(exc_value) if exc_value else None,
            }
            if self.include_traceback:
                log_data["exception"]["traceback"] = self._format_traceback(
                    record.exc_info
                )

        for key, value in record.__dict__.items():
            if key in self._RECORD_ATTRS or key.startswith("_"):
                continue
            if key not in self.STANDARD_FIELDS:
                log_data[key] = self._serialize_value(value)

        log_data.update(self.extra_fields)

        return json.dumps(log_data, default=str, indent=self.indent)

    def _format_traceback(self, exc_info) -> list:
        """Format exception traceback as list of frames."""
        if not exc_info[2]:
            return []

        return [
            {
                "file": frame.filename,
                "line": frame.lineno,
                "function": frame.name,
                "code": frame.line,
            }
            for frame in traceback.extract_tb(exc_info[2])
        ]

    def _serialize_value(self, value: Any) -> Any:
        """Serialize value for JSON output."""
        if isinstance(value, (str, int, float, bool, type(None))):
            return value
        if isinstance(value, (list, tuple)):
            return [self._serialize_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self._serialize_value(v) for k, v in value.items()}
        if hasattr(value, "to_dict"):
            return value.to_dict()
        return str(value)


def configure_logging(
    *,
    level: Union[str, int] = logging.INFO,
    json_format: bool = True,
    log_file: Optional[str] = None,
    extra_fields: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level
        json_format: Use JSON formatting
        log_file: Optional log file path
        extra_fields: Extra fields to include in all logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    def _formatter() -> logging.Formatter:
        if json_format:
            return JSONFormatter(extra_fields=extra_fields)
        return logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    # stdout carries watcher output, so logs go to stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(_formatter())
    root_logger.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(_formatter())
        root_logger.addHandler(file_handler)


class LogContext:
    """
    Context manager for adding temporary context to logs.

    Example:
        with LogContext(session_id="ab12cd34"):
            logger.info("Connecting")  # includes session_id
    """

    def __init__(self, **context):
        self.context = context
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        if "session_id" in self.context:
            self._tokens.append(_session_id.set(self.context["session_id"]))
        if "correlation_id" in self.context:
            self._tokens.append(_correlation_id.set(self.context["correlation_id"]))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()
