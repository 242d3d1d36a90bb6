# portal_backend/log.py
from __future__ import annotations

import logging

import structlog

from . import config

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Set up JSON structured logging once per process."""
    global _configured
    if _configured:
        return

    lvl = getattr(logging, (level or config.LOG_LEVEL), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(lvl),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(component: str):
    return structlog.get_logger(component=component)
