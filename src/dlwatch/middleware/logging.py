"""Structured logging configuration with structlog.

Job loops bind ``job`` into the context, so every event logged during a tick
carries the trigger name.
"""

import logging
import sys

import structlog

from dlwatch.config import Settings

# Per-request client and SQL logs drown out tick summaries.
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")

SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _renderer(log_format: str) -> structlog.types.Processor:
    if log_format == "console":
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def setup_logging(settings: Settings) -> None:
    """Configure structlog and the stdlib root logger from settings."""
    structlog.configure(
        processors=[*SHARED_PROCESSORS, _renderer(settings.log_format)],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, stream=sys.stdout, format="%(message)s")
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
