"""
Structured logging configuration using structlog.

Provides JSON-formatted logs for production (searchable/aggregatable)
and human-readable colored output for development.

Usage:
    from app.core.logging_config import get_logger

    logger = get_logger(__name__)
    logger.info("Webhook event admitted", event_id="evt_1", payment_id="pay_9")

Output in production (JSON):
    {"event": "Webhook event admitted", "event_id": "evt_1", "payment_id": "pay_9",
     "timestamp": "2024-01-01T12:00:00Z", "level": "info", "request_id": "req_..."}

Output in development (colored):
    2024-01-01 12:00:00 [info     ] Webhook event admitted    event_id=evt_1 payment_id=pay_9
"""

import logging
import sys
from typing import Any

import structlog

from app.core.config import settings

IS_PRODUCTION = settings.ENVIRONMENT == "production"
IS_TEST = "pytest" in sys.modules


def configure_logging() -> None:
    """Configure structlog with appropriate processors for the environment."""

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if IS_PRODUCTION or settings.LOG_JSON:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=not IS_TEST),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Route third-party stdlib logging (uvicorn, sqlalchemy) to stdout as well
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.INFO,
    )

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (typically __name__)
    """
    return structlog.get_logger(name)


# Configure on import
configure_logging()
