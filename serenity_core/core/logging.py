"""
Standardized Logging Configuration

Structured logging for the webhook engine. JSON output for production and a
human-readable console renderer for development.
"""

import logging
import sys
from typing import Optional

import structlog


# Suppress noisy third-party loggers
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio", "redis")


def setup_logging(
    level: str = "info",
    fmt: str = "console",
    service_name: Optional[str] = None,
) -> None:
    """
    Configure stdlib logging and structlog for the application.

    Args:
        level: Log level (debug, info, warning, error, critical)
        fmt: Output format, ``json`` or ``console``
        service_name: Bound onto every log entry when given
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if service_name:
        structlog.contextvars.bind_contextvars(service=service_name)

    structlog.get_logger(__name__).info("logging_configured", level=level, format=fmt)


def setup_logging_from_settings() -> None:
    """Configure logging from the engine settings."""
    from serenity_core.config import get_settings

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
