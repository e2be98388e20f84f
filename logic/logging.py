"""Logging configuration shared by the API, the Streamlit app and the scripts."""

from __future__ import annotations

import logging
import os

import structlog

_configured = False


def configure_logging(level: str | None = None) -> None:
    """Route structlog through stdlib logging once per process.

    `LOG_FORMAT=json` switches to JSON lines (containers); anything else renders
    for the console. Tracebacks from `logger.exception` are kept in both.
    """
    global _configured
    if _configured:
        return

    lvl_name = str(level or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    lvl = getattr(logging, lvl_name, logging.INFO)
    logging.basicConfig(level=lvl, format="%(message)s")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if str(os.getenv("LOG_FORMAT", "console")).strip().lower() == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer formats exc_info itself.
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Suppress noisy library loggers
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    _configured = True
