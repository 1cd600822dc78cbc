"""
Payment webhook events, one row per distinct provider event.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Index
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp stored in UTC and always read back timezone-aware.

    SQLite keeps DATETIME values without an offset, so naive results are
    tagged as UTC; PostgreSQL returns aware values already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class PaymentEventType(str, Enum):
    AUTHORIZED = "payment_authorized"
    CAPTURED = "payment_captured"
    FAILED = "payment_failed"
    REFUNDED = "payment_refunded"
    DISPUTED = "payment_disputed"


class PaymentEvent(SQLModel, table=True):
    """
    An admitted webhook event. Append-only: rows are never updated or deleted.

    The unique index on event_id is the authoritative idempotency guard;
    providers redeliver on timeouts, and two deliveries can race past any
    application-level check.
    """
    __tablename__ = "payment_events"
    __table_args__ = (
        Index("ix_payment_events_payment_id_received_at", "payment_id", "received_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)

    # Sender-assigned identity (idempotency key)
    event_id: str = Field(max_length=255, unique=True, index=True)
    payment_id: str = Field(max_length=255, index=True)
    event_type: str = Field(max_length=64)

    # Full received body, verbatim (unknown fields included)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    # Server clock at admission, never client-declared
    received_at: datetime = Field(
        default_factory=_utc_now,
        sa_column=Column(UTCDateTime(), nullable=False),
    )

    def to_summary(self) -> Dict[str, Any]:
        return {"event_type": self.event_type, "received_at": self.received_at}
