"""Database utilities for handling transient connection failures.

PostgreSQL connections can drop unexpectedly (failover, idle timeouts,
pooler restarts). Read-side queries retry these transient failures; the
admission path does not, because the webhook sender redelivers on error.
"""

import functools
import time
from typing import Any, Callable, ParamSpec, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlmodel import Session

from app.core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

# Errors that indicate a transient connection failure (worth retrying)
TRANSIENT_ERRORS = (
    "server closed the connection unexpectedly",
    "connection refused",
    "connection reset by peer",
    "ssl connection has been closed unexpectedly",
    "terminating connection due to administrator command",
    "connection timed out",
    "could not connect to server",
    "the database system is starting up",
    "the database system is shutting down",
    "database is locked",
)


def is_transient_error(error: Exception) -> bool:
    """Check if an error is a transient connection failure."""
    error_msg = str(error).lower()
    return any(msg in error_msg for msg in TRANSIENT_ERRORS)


def db_retry(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential: bool = True,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator that retries a database operation on transient connection failures.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        exponential: Use exponential backoff if True
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        func_name = getattr(func, "__name__", "unknown")

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)  # type: ignore[arg-type]
                except (OperationalError, DisconnectionError, InterfaceError) as e:
                    if not is_transient_error(e) or attempt >= max_retries:
                        raise

                    delay = min(
                        base_delay * (2**attempt if exponential else 1),
                        max_delay,
                    )
                    logger.warning(
                        "DB retry",
                        operation=func_name,
                        attempt=attempt + 1,
                        max_attempts=max_retries + 1,
                        delay_seconds=round(delay, 1),
                        error=str(e),
                    )
                    time.sleep(delay)

            raise RuntimeError("Unexpected state in db_retry")

        return wrapper  # type: ignore[return-value]

    return decorator


def check_db_connection(engine) -> bool:  # type: ignore[type-arg]
    """
    Check if database connection is healthy.
    Returns True if connection is good, False otherwise.
    """
    try:
        with Session(engine) as session:
            session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error("DB connection check failed", error=str(e))
        return False
