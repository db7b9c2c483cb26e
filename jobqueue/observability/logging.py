"""
Structured logging setup using structlog.

Library code logs through the standard `logging` module with `extra={...}`
fields; `setup_logging` routes those records through structlog so each
process (worker, dispatcher, janitor) emits the same JSON or console lines.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from jobqueue.config import get_settings

# Chatty dependencies; statement logging is left to tracing
QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current span's trace and span ids, when a span is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        span_context = span.get_span_context()
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def _renderer(log_format: str) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(process_name: str | None = None) -> None:
    """
    Configure structured logging for a queue process.

    Replaces the root logger's handlers with one stdout handler whose
    formatter runs the structlog processor chain over every stdlib record.

    Args:
        process_name: Bound to every record as `process`, when given.
    """
    settings = get_settings()

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ExtraAdder(),
    ]

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(settings.log_format),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if process_name:
        bind_context(process=process_name)


def bind_context(**kwargs: Any) -> None:
    """
    Bind fields to every record logged from the current context.

    Each asyncio task runs in a copy of its creator's context, so fields bound
    inside a worker's job task only appear on that job's records.
    """
    structlog.contextvars.bind_contextvars(**kwargs)
