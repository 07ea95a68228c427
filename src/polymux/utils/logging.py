"""Logging Configuration"""
import logging
from typing import Optional, TextIO

import structlog

from polymux.config import Settings, get_settings


def setup_logging(settings: Optional[Settings] = None, stream: Optional[TextIO] = None) -> None:
    """Setup structured logging with structlog

    This should be called once at application startup. Log lines go to
    ``stream`` (stdout by default).
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Configure standard library logging (uvicorn, httpx)
    logging.basicConfig(
        format="%(message)s",
        level=level,
        stream=stream,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("polymux")
    logger.info("Structured logging configured",
                log_level=settings.log_level,
                log_format=settings.log_format)
