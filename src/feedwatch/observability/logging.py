"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from feedwatch.core.config import LogLevel, get_settings

# Log fields that may carry a resume token
TOKEN_FIELDS = ("resume_token", "position", "resume_after")
TOKEN_PREVIEW = 16

DRIVER_LOGGERS = ("pymongo", "motor")


def compact_resume_tokens(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    """Shorten server resume tokens, which are long hex strings, in log fields."""
    for field in TOKEN_FIELDS:
        value = event_dict.get(field)
        if isinstance(value, dict):
            value = value.get("_data", value)
        if isinstance(value, str) and len(value) > TOKEN_PREVIEW:
            event_dict[field] = value[:TOKEN_PREVIEW] + "..."
    return event_dict


def _renderer(output_format: str) -> list[Processor]:
    if output_format == "json":
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())]


def configure_logging(
    level: LogLevel | str | None = None,
    format_type: str | None = None,
    service_name: str | None = None,
) -> None:
    """
    Configure structured logging for the application.

    Change events are printed on stdout, so every log line goes to stderr.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format_type: Output format ("json" or "console").
        service_name: Service name for log entries.
    """
    observability = get_settings().observability

    log_level = LogLevel((level or observability.log_level).upper())
    numeric_level = getattr(logging, log_level.value)

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)
    # Driver heartbeat and pool chatter stays below warning
    for name in DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            compact_resume_tokens,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(format_type or observability.log_format),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name or observability.service_name)


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually module name).
        **initial_context: Initial context values to bind.
    """
    logger = structlog.get_logger(name)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def watch_context(namespace: str, **context: Any) -> AbstractContextManager[Any]:
    """Bind the watched namespace to every log line emitted inside the block."""
    return structlog.contextvars.bound_contextvars(namespace=namespace, **context)


def get_watcher_logger(namespace: str) -> structlog.BoundLogger:
    """Get a logger bound to a watched namespace."""
    return get_logger("feedwatch.watcher", namespace=namespace)
