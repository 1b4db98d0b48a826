"""structlog setup for the harness and its CLI.

Everything is written to stderr so ``--json`` command output on stdout
stays machine-readable. Environment variables supply defaults that the
``configure_logging()`` arguments override:

    SERVICEBED_LOG_LEVEL          DEBUG | INFO | WARNING | ERROR (INFO)
    SERVICEBED_LOG_FORMAT         console | json (console)
    SERVICEBED_LOG_SERVICE_DEBUG  services always logged at DEBUG, e.g. "postgres"
"""

import logging
import os
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor

from servicebed.framework.logging.context import add_context_processor, get_context

_configured = False

_METHOD_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "exception": logging.ERROR,
    "critical": logging.CRITICAL,
}


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
    format: Literal["json", "console"] | None = None,
    service_debug: list[str] | None = None,
    force: bool = False,
) -> None:
    """Install the structlog processor chain and the stderr root handler.

    Only the first call takes effect unless ``force`` is set.
    """
    global _configured

    if _configured and not force:
        return

    log_level = (level or os.environ.get("SERVICEBED_LOG_LEVEL", "INFO")).upper()
    log_format = (format or os.environ.get("SERVICEBED_LOG_FORMAT", "console")).lower()
    if service_debug is None:
        service_debug = _split_env("SERVICEBED_LOG_SERVICE_DEBUG")

    if service_debug:
        level_filter: Processor = _service_filter(frozenset(service_debug), _METHOD_LEVELS[log_level.lower()])
        # Records for the listed services must reach the filter at DEBUG
        root_level = logging.DEBUG
    else:
        level_filter = structlog.stdlib.filter_by_level
        root_level = _METHOD_LEVELS[log_level.lower()]

    structlog.configure(
        processors=[
            level_filter,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_context_processor,
            structlog.processors.format_exc_info,
            _renderer(log_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=root_level, force=True)

    _configured = True


def is_configured() -> bool:
    return _configured


def _split_env(name: str) -> list[str]:
    return [part.strip() for part in os.environ.get(name, "").split(",") if part.strip()]


def _renderer(log_format: str) -> Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(
        colors=sys.stderr.isatty(),
        exception_formatter=structlog.dev.plain_traceback,
    )


def _service_filter(services: frozenset[str], threshold: int) -> Processor:
    """Drop events below ``threshold`` unless they belong to one of ``services``.

    The service comes from the event itself or from the bound ``LogContext``.
    """

    def filter_by_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        service = event_dict.get("service") or get_context().service
        if service in services:
            return event_dict
        if _METHOD_LEVELS.get(method_name, logging.DEBUG) < threshold:
            raise structlog.DropEvent
        return event_dict

    return filter_by_service
