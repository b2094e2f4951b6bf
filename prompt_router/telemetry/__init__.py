"""Telemetry package: structured logging with request correlation."""

from __future__ import annotations

from prompt_router.telemetry.logging import (
    bind_request_context,
    clear_context,
    configure_logging,
    new_request_id,
)

__all__ = [
    "bind_request_context",
    "clear_context",
    "configure_logging",
    "new_request_id",
]
