"""
Unified error handling with Sentry integration.

Provides:
- Domain exceptions for configuration and store failures
- Automatic Sentry error tracking (when configured)
- Structured logging with request context enrichment

Usage:
    try:
        store.insert(...)
    except StoreUnavailableError as exc:
        capture_exception(exc, context={"event_id": event_id})
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from app.core.context import get_context_dict, get_request_id

logger = structlog.get_logger(__name__)

__all__ = [
    "ConfigurationError",
    "StoreUnavailableError",
    "init_sentry",
    "capture_exception",
    "is_sentry_enabled",
]

_sentry_initialized: bool = False
_traces_sample_rate: float = 0.1


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""


class StoreUnavailableError(RuntimeError):
    """
    The event store could not complete an operation.

    Covers connection failures, timeouts and any database error other than
    the event_id uniqueness violation. The outcome of the operation is
    unknown, so callers must not report it as admitted or duplicate.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.cause = cause
        message = f"Event store unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {type(cause).__name__}"
        super().__init__(message)


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.1,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        traces_sample_rate: Percentage of transactions to trace (0.0-1.0)
        release: Release version (defaults to GIT_COMMIT_SHA)

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized, _traces_sample_rate

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    if not release:
        release = os.environ.get("GIT_COMMIT_SHA")

    try:
        _traces_sample_rate = traces_sample_rate
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            release=release,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,
                    event_level=logging.ERROR,
                ),
            ],
            ignore_errors=[
                KeyboardInterrupt,
                SystemExit,
            ],
            traces_sampler=_traces_sampler,
            before_send=_before_send,
        )
    except Exception as e:
        logger.error("Failed to initialize Sentry", error=str(e))
        return False

    _sentry_initialized = True
    logger.info(
        "Sentry initialized",
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        release=release,
    )
    return True


def _traces_sampler(sampling_context: Dict[str, Any]) -> float:
    """Skip health check transactions, inherit parent decisions."""
    transaction_name = sampling_context.get("transaction_context", {}).get("name", "")
    parent = sampling_context.get("parent_sampled")

    if parent is not None:
        return float(parent)

    if "/health" in transaction_name:
        return 0.0

    return _traces_sample_rate


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Drop health check noise and tag events with the request id."""
    if "request" in event:
        url = event["request"].get("url", "")
        if "/health" in url:
            return None

    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    return event


def is_sentry_enabled() -> bool:
    return _sentry_initialized


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"event_id": "evt_1"})
        level: Severity level (debug, info, warning, error, fatal)
        tags: Additional tags for filtering in Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "error_type": type(exc).__name__,
        **(context or {}),
    }

    logger.error(
        "Exception captured",
        exc_info=exc,
        **enriched_context,
    )

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)

            if tags:
                for key, value in tags.items():
                    scope.set_tag(key, value)

            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))

    return None
