"""Logging utilities for the export service."""

from __future__ import annotations

import logging
from functools import lru_cache

import structlog


@lru_cache(maxsize=1)
def configure_logging(level: str = "INFO") -> structlog.stdlib.BoundLogger:
    """Configure structlog and return the service logger.

    Configuration happens only once even if this function is called multiple
    times (e.g. when several apps are created during test runs).
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("export_service")


__all__ = ["configure_logging"]
