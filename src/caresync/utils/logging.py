"""Logging configuration for CareSync.

Sync events are logged as structured events named `sync_*` or `offline_*`
with `entity_type`, `record_id` and `revision` fields. The device id is bound
once per process and carried on every event.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import BoundLogger, LoggerFactory

from caresync.config import get_settings

# Chatty third-party loggers kept at WARNING unless debugging
QUIET_LOGGERS = ("aiohttp.access", "sqlalchemy.engine", "uvicorn.access")


def setup_logging() -> None:
    """Configure structured logging for the application."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    if not settings.debug:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            render_processor(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def render_processor() -> Any:
    """Choose renderer based on environment."""
    settings = get_settings()

    if settings.log_format == "json":
        return structlog.processors.JSONRenderer()
    else:
        return structlog.dev.ConsoleRenderer()


def bind_device(device_id: str) -> None:
    """Attach the device id to every subsequent log event."""
    structlog.contextvars.bind_contextvars(device_id=device_id)


def get_logger(name: str) -> BoundLogger:
    """Get a configured logger instance."""
    bound_logger: BoundLogger = structlog.get_logger(name)
    return bound_logger
