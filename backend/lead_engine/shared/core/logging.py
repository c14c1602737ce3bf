"""
Logging Configuration with Correlation ID Support

This module provides:
1. A context variable holding the correlation ID of the current request or scheduler tick
2. A log filter/formatter that includes the correlation ID
3. Helpers to read and set the correlation ID
"""
import logging
import uuid
from contextvars import ContextVar
from typing import Optional

# Works across asyncio tasks: each task gets a copy of the context it was created in
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None, prefix: str = "req") -> str:
    """
    Set the correlation ID for the current request or background unit of work.
    If not provided, generates one like "req-1a2b3c4d" (or "tick-..." for the scheduler).

    Returns the correlation ID that was set.
    """
    if correlation_id is None:
        correlation_id = f"{prefix}-{uuid.uuid4().hex[:8]}"
    correlation_id_var.set(correlation_id)
    return correlation_id


class CorrelationIdFilter(logging.Filter):
    """Adds correlation_id to every log record so the formatter can print it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-request"
        return True


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger with correlation ID support.

    Format: timestamp | [correlation id] | logger | level | message
    """
    log_format = "%(asctime)s | [%(correlation_id)s] | %(name)s | %(levelname)s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    formatter = logging.Formatter(log_format, datefmt=date_format)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers to avoid duplicate logs
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(handler)
