"""
Observability Module

Structured logging with context propagation.
"""

from kbengine.observability.logging import (
    BufferHandler,
    ConsoleHandler,
    FileHandler,
    LogHandler,
    LogLevel,
    LogRecord,
    StructuredLogger,
    configure_logging,
    get_logger,
)

__all__ = [
    "StructuredLogger",
    "LogLevel",
    "LogRecord",
    "LogHandler",
    "ConsoleHandler",
    "FileHandler",
    "BufferHandler",
    "configure_logging",
    "get_logger",
]
