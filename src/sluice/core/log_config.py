"""
sluice.core.log_config - structlog setup
==========================================

Every Sluice component logs through structlog. Libraries embedding Sluice can
configure structlog themselves; when they have not, the facade calls
configure_logging() so the configured log level is honoured.
"""

from __future__ import annotations

import logging

import structlog


def configure_logging(level: str = "INFO", force: bool = False) -> None:
    """Configure structlog with a level-filtering bound logger.

    Args:
        level: Standard logging level name (DEBUG, INFO, ...).
        force: Reconfigure even if structlog was already configured.
    """
    if structlog.is_configured() and not force:
        return

    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        cache_logger_on_first_use=False,
    )
