"""structlog setup shared by every HydroAlert entry point.

Modules only ever call ``structlog.get_logger(__name__)``; this
function decides how those events are rendered. Call it once at
process start (the FastAPI lifespan does).
"""

from __future__ import annotations

import logging
import sys

import structlog

from shared.config import get_settings

_configured = False


def configure_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure structlog + stdlib logging.

    Args:
        level: Log level name; defaults to ``LOG_LEVEL``.
        fmt:   ``json`` for one JSON object per line, anything else for
               the coloured console renderer. Defaults to ``LOG_FORMAT``.
    """
    global _configured
    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if (fmt or settings.LOG_FORMAT) == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
    if not _configured:
        structlog.get_logger(__name__).info("logging_configured", level=level_name)
    _configured = True
