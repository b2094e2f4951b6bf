"""Structured logging configuration.

Configures structlog with JSON output for production and a readable console
renderer for development.

Features:
- JSON-formatted logs in production (human-readable in dev)
- Request ID propagation through contextvars, so every log line emitted
  while a routing call is in flight can be correlated
- ISO8601 timestamps in UTC
- Stack traces for exceptions

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "event": "dispatcher.candidate_succeeded",
        "request_id": "req_789...",
        "provider_id": "openai",
        "model": "gpt-4o-mini"
    }
"""

from __future__ import annotations

import logging
import sys
import uuid

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the host process.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def new_request_id() -> str:
    """Generate a short request identifier for log correlation."""
    return f"req_{uuid.uuid4().hex[:16]}"


def bind_request_context(request_id: str | None = None) -> str:
    """Bind a request ID to the log context of the current task.

    Args:
        request_id: Identifier to bind. A new one is generated if omitted.

    Returns:
        The bound request ID
    """
    request_id = request_id or new_request_id()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    return request_id


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
