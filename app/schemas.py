from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, StrictStr
from datetime import datetime

from app.models.payment_event import PaymentEventType


# ============== INBOUND ==============


class WebhookPayload(BaseModel):
    """
    Required fields of a payment webhook body.

    Extra fields are allowed and kept only in the stored raw payload,
    never promoted to typed columns.
    """
    model_config = ConfigDict(extra="allow")

    event_id: StrictStr = Field(min_length=1, max_length=255)
    event_type: PaymentEventType
    payment_id: StrictStr = Field(min_length=1, max_length=255)


# ============== OUTBOUND ==============


class PaymentEventOut(BaseModel):
    id: int
    event_id: str
    payment_id: str
    event_type: str
    payload: Dict[str, Any]
    received_at: datetime

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    message: str
    event: PaymentEventOut
    duplicate: bool = False


class EventSummary(BaseModel):
    event_type: str
    received_at: datetime


class PaymentEventDetail(BaseModel):
    id: int
    event_id: str
    event_type: str
    received_at: datetime
    payload: Dict[str, Any]

    model_config = {"from_attributes": True}


class PaymentDetails(BaseModel):
    payment_id: str
    total_events: int
    event_types: List[str]
    first_event_at: datetime
    last_event_at: datetime
    current_status: str
    events: List[PaymentEventDetail]


class PaymentSummary(BaseModel):
    payment_id: str
    latest_event_type: str
    last_updated: datetime
    event_count: int

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int


class PaymentList(BaseModel):
    payments: List[PaymentSummary]
    pagination: Pagination


class WebhookStatus(BaseModel):
    status: str
    message: str
    recent_events: int
    last_event_at: Optional[datetime] = None
    ingestion: Dict[str, Any]
    timestamp: datetime
