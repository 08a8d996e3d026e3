"""structlog configuration.

Modules hold a lazy logger, resolved against the current configuration
at each call:

    logger = structlog.get_logger(system="automaton")

Log output is diagnostic only and never feeds audit hashes.
"""
from __future__ import annotations

import logging
from typing import Optional

import structlog

from equitrust.config import Settings


def setup_logging(level: Optional[str] = None, json: Optional[bool] = None) -> None:
    """Configure structlog for console (dev) or JSON (pipeline) output."""
    level_name = (level or Settings.LOG_LEVEL).upper()
    use_json = Settings.LOG_JSON if json is None else json
    numeric = logging.getLevelName(level_name)
    if not isinstance(numeric, int):
        numeric = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
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
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=False,
    )
