"""
servicebed logging - structured, context-aware logging.

This module provides:
- Structured logging with structlog
- Harness context propagation via contextvars
- Timing utilities for startup/readiness tracking
- Environment-based configuration

Usage:
    from servicebed.framework.logging import configure_logging, get_logger, log_step

    configure_logging()
    log = get_logger(__name__)

    with log_step("service.start", image="redis:latest"):
        ...
"""

from servicebed.framework.logging.config import configure_logging, is_configured
from servicebed.framework.logging.context import (
    LogContext,
    bind_context,
    clear_context,
    get_context,
    get_logger,
    push_context,
    set_context,
)
from servicebed.framework.logging.timing import TimingResult, log_step, timed_block

__all__ = [
    # Configuration
    "configure_logging",
    "is_configured",
    # Context
    "get_logger",
    "set_context",
    "clear_context",
    "get_context",
    "bind_context",
    "push_context",
    "LogContext",
    # Timing
    "log_step",
    "timed_block",
    "TimingResult",
]
