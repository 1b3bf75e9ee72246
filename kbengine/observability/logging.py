"""
Structured Logging

JSON-structured logging with context propagation.

Design decisions:
- Structured JSON output
- Log level filtering
- Context enrichment (user, entity, file, entry ids)
- Module loggers share the handlers installed by configure_logging
"""

import contextvars
import json
import sys
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, TextIO

from kbengine.config.settings import ObservabilitySettings


class LogLevel(IntEnum):
    """Log levels matching Python's logging module."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50


# Context keys promoted to top-level record fields
CONTEXT_FIELDS = ("request_id", "user_id", "entity_id", "file_id", "knowledge_entry_id")


@dataclass
class LogRecord:
    """A structured log record."""

    level: LogLevel
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    logger_name: str = "kbengine"

    # Structured data
    data: dict[str, Any] = field(default_factory=dict)

    # Error info
    error: str | None = None
    error_type: str | None = None
    stack_trace: str | None = None

    # Request context
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result = {
            "timestamp": self.timestamp.isoformat(),
            "level": LogLevel(self.level).name,
            "logger": self.logger_name,
            "message": self.message,
        }

        if self.data:
            result["data"] = self.data

        if self.error:
            result["error"] = {
                "message": self.error,
                "type": self.error_type,
                "stack_trace": self.stack_trace,
            }

        for key in CONTEXT_FIELDS:
            if self.context.get(key) is not None:
                result[key] = self.context[key]

        return result

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str, ensure_ascii=False)


class LogHandler:
    """Base class for log handlers."""

    def __init__(self, level: LogLevel = LogLevel.DEBUG):
        self.level = level

    def should_handle(self, level: LogLevel) -> bool:
        return level >= self.level

    def handle(self, record: LogRecord) -> None:
        pass

    def close(self) -> None:
        pass


class ConsoleHandler(LogHandler):
    """Outputs logs to console."""

    def __init__(
        self,
        level: LogLevel = LogLevel.DEBUG,
        stream: TextIO | None = None,
        json_output: bool = True,
    ):
        super().__init__(level)
        self.stream = stream or sys.stderr
        self.json_output = json_output

    def handle(self, record: LogRecord) -> None:
        if not self.should_handle(record.level):
            return

        if self.json_output:
            output = record.to_json()
        else:
            output = (
                f"[{record.timestamp.strftime('%Y-%m-%d %H:%M:%S')}] "
                f"{LogLevel(record.level).name:8s} {record.logger_name}: {record.message}"
            )
            if record.data:
                output += f" | {record.data}"
            if record.error:
                output += f" | ERROR: {record.error}"

        print(output, file=self.stream)


class FileHandler(LogHandler):
    """Appends JSON lines to a file."""

    def __init__(self, filename: str, level: LogLevel = LogLevel.DEBUG):
        super().__init__(level)
        self.filename = filename
        self._file = None

    def handle(self, record: LogRecord) -> None:
        if not self.should_handle(record.level):
            return

        if self._file is None:
            self._file = open(self.filename, "a", encoding="utf-8")

        self._file.write(record.to_json() + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file:
            self._file.close()
            self._file = None


class BufferHandler(LogHandler):
    """Buffers logs in memory for testing."""

    def __init__(self, level: LogLevel = LogLevel.DEBUG, max_records: int = 1000):
        super().__init__(level)
        self.records: list[LogRecord] = []
        self._max_records = max_records

    def handle(self, record: LogRecord) -> None:
        if not self.should_handle(record.level):
            return

        self.records.append(record)

        if len(self.records) > self._max_records:
            self.records = self.records[-self._max_records :]

    def messages(self, level: LogLevel | None = None) -> list[str]:
        return [r.message for r in self.records if level is None or r.level == level]

    def clear(self) -> None:
        self.records.clear()


# Context variables for log enrichment
_log_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "log_context", default={}
)

# Shared by every logger created without explicit handlers
_default_handlers: list[LogHandler] = [ConsoleHandler()]
_default_level: dict[str, LogLevel] = {"level": LogLevel.INFO}


class StructuredLogger:
    """
    Main structured logging interface.

    Loggers built without explicit handlers or level follow whatever
    configure_logging installed, including after they were created.
    """

    def __init__(
        self,
        name: str = "kbengine",
        level: LogLevel | None = None,
        handlers: list[LogHandler] | None = None,
    ):
        self.name = name
        self._level = level
        self._handlers = handlers

    @property
    def level(self) -> LogLevel:
        return self._level if self._level is not None else _default_level["level"]

    @property
    def handlers(self) -> list[LogHandler]:
        return self._handlers if self._handlers is not None else _default_handlers

    def _log(
        self,
        level: LogLevel,
        message: str,
        data: dict[str, Any] | None = None,
        error: BaseException | None = None,
        **extra: Any,
    ) -> None:
        if level < self.level:
            return

        record = LogRecord(
            level=level,
            message=message,
            logger_name=self.name,
            data={**(data or {}), **extra},
            context=dict(_log_context.get()),
        )

        if error:
            record.error = str(error)
            record.error_type = type(error).__name__
            if error.__traceback__ is not None:
                record.stack_trace = "".join(
                    traceback.format_exception(type(error), error, error.__traceback__)
                )

        for handler in self.handlers:
            try:
                handler.handle(record)
            except Exception:  # noqa: BLE001
                # Logging must never break the caller
                continue

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log at DEBUG level."""
        self._log(LogLevel.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Log at INFO level."""
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, error: BaseException | None = None, **kwargs: Any) -> None:
        """Log at WARNING level."""
        self._log(LogLevel.WARNING, message, error=error, **kwargs)

    def error(self, message: str, error: BaseException | None = None, **kwargs: Any) -> None:
        """Log at ERROR level."""
        self._log(LogLevel.ERROR, message, error=error, **kwargs)

    def critical(self, message: str, error: BaseException | None = None, **kwargs: Any) -> None:
        """Log at CRITICAL level."""
        self._log(LogLevel.CRITICAL, message, error=error, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log the exception being handled at ERROR level."""
        self.error(message, error=sys.exc_info()[1], **kwargs)

    @staticmethod
    @contextmanager
    def context(**kwargs: Any):
        """
        Context manager for adding context to logs.

        Usage:
            with logger.context(user_id="u1", file_id="f1"):
                logger.info("Ingesting file")
        """
        current = _log_context.get()
        token = _log_context.set({**current, **kwargs})

        try:
            yield
        finally:
            _log_context.reset(token)

    @staticmethod
    def clear_context() -> None:
        _log_context.set({})


def get_logger(name: str = "kbengine") -> StructuredLogger:
    """Get a logger that follows the process-wide logging configuration."""
    return StructuredLogger(name=name)


def configure_logging(
    settings: ObservabilitySettings | None = None,
    handlers: list[LogHandler] | None = None,
) -> None:
    """
    Install handlers and level for every logger using the defaults.

    Explicit handlers replace the console/file handlers derived from
    settings, which is how tests capture output in a BufferHandler.
    """
    settings = settings or ObservabilitySettings()
    level = LogLevel[settings.log_level]

    if handlers is None:
        handlers = [ConsoleHandler(level=level, json_output=settings.log_format == "json")]
        if settings.log_file:
            handlers.append(FileHandler(settings.log_file, level=level))

    for old in _default_handlers:
        if old not in handlers:
            old.close()

    _default_handlers[:] = handlers
    _default_level["level"] = level
