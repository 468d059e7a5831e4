"""Logging configuration for Deckhand."""

import logging
import sys
from typing import TextIO

import structlog

from deckhand.config import LoggingConfig, get_config


def configure_logging(config: LoggingConfig | None = None, stream: TextIO | None = None) -> None:
    """Configure structured logging for Deckhand.

    Args:
        config: Logging settings; defaults to the global config's ``logging``
        stream: Where rendered lines go (stderr by default)
    """
    settings = config or get_config().logging

    log_level = getattr(logging, settings.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
