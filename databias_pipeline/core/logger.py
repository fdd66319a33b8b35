"""Structured logging for the analysis pipeline.

structlog with UTC ISO timestamps and the log level, rendered as JSON
(LOG_FORMAT=json) or human-readable console output. Modules call
``get_logger(__name__)`` and log snake_case events with keyword context::

    logger = get_logger(__name__)
    logger.info("analysis_completed", analysis_id=7, tenant_id=2)
"""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

from .config import settings

LOG_LEVEL_VALUE = getattr(logging, settings.LOG_LEVEL, logging.INFO)


def configure_logging() -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if settings.LOG_FORMAT == "json":
        processors.append(structlog.processors.JSONRenderer(default=str))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(LOG_LEVEL_VALUE),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_logging()


def get_logger(name: str) -> structlog.BoundLogger:
    """Logger bound to the calling module name."""
    return structlog.get_logger(name).bind(logger=name)
