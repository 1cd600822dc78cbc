"""
Request context management for log correlation.

Provides request_id correlation across logs and error reports.
Uses contextvars for async-safe context propagation.

Usage:
    # In middleware (automatic)
    set_request_id(generate_request_id())

    # In error handlers
    capture_exception(exc, context={"event_id": event_id})
"""

from contextvars import ContextVar
from typing import Optional
import uuid

__all__ = [
    "set_request_id",
    "get_request_id",
    "generate_request_id",
    "set_client_ip",
    "get_client_ip_context",
    "clear_context",
    "get_context_dict",
]

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_client_ip: ContextVar[Optional[str]] = ContextVar("client_ip", default=None)


def generate_request_id() -> str:
    """
    Generate a new request ID.

    Format: req_{16 hex chars}
    """
    return f"req_{uuid.uuid4().hex[:16]}"


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> Optional[str]:
    return _request_id.get()


def set_client_ip(client_ip: str) -> None:
    _client_ip.set(client_ip)


def get_client_ip_context() -> Optional[str]:
    return _client_ip.get()


def clear_context() -> None:
    """Called at end of request to prevent context leaking."""
    _request_id.set(None)
    _client_ip.set(None)


def get_context_dict() -> dict:
    """Get all context variables as dict, for enriching error reports."""
    return {
        "request_id": get_request_id(),
        "client_ip": get_client_ip_context(),
    }
