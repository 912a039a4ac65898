"""
Logging Setup

Structured JSON logging via structlog on top of the stdlib logging module.
Host applications call configure_logging() once at startup.
"""

import logging

import structlog

from grounding.config import Settings, get_settings


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root stdlib logger."""
    settings = settings or get_settings()
    level = logging.DEBUG if settings.debug else getattr(
        logging, settings.log_level.upper(), logging.INFO
    )

    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
