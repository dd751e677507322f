"""Structured logging configuration (structlog)."""
from __future__ import annotations

import logging
import sys

import structlog


def configure_structlog(level: str = "INFO", fmt: str = "console") -> None:
    """Configure structlog for the control-plane process.

    Call once at process startup. ``fmt="json"`` switches the console
    renderer for a JSON-lines renderer suitable for log shipping.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
