"""
Read-side endpoints over recorded payment events.
"""
from typing import Annotated, Any, List

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from app.api.deps import get_event_store
from app.core.logging_config import get_logger
from app.schemas import (
    EventSummary,
    Pagination,
    PaymentDetails,
    PaymentEventDetail,
    PaymentList,
    PaymentSummary,
)
from app.services.event_store import SqlEventStore

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

PaymentId = Annotated[str, Path(min_length=1, max_length=255, description="Provider payment identifier")]


@router.get("", response_model=PaymentList)
def list_payments(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    store: SqlEventStore = Depends(get_event_store),
) -> Any:
    """All payments with their latest status, most recently updated first."""
    statuses = store.latest_per_payment(limit=limit, offset=offset)
    total = store.count_payments()

    logger.info("Payments listed", returned=len(statuses), total=total, limit=limit, offset=offset)

    return PaymentList(
        payments=[PaymentSummary.model_validate(s) for s in statuses],
        pagination=Pagination(limit=limit, offset=offset, total=total),
    )


@router.get("/{payment_id}/events", response_model=List[EventSummary])
def get_payment_events(
    payment_id: PaymentId,
    store: SqlEventStore = Depends(get_event_store),
) -> Any:
    """Events of one payment in arrival order."""
    events = store.find_by_payment_id(payment_id)
    if not events:
        raise HTTPException(status_code=404, detail=f"No events found for payment ID: {payment_id}")

    return [event.to_summary() for event in events]


@router.get("/{payment_id}", response_model=PaymentDetails)
def get_payment_details(
    payment_id: PaymentId,
    store: SqlEventStore = Depends(get_event_store),
) -> Any:
    """Payment history with derived current status (type of the latest event)."""
    events = store.find_by_payment_id(payment_id)
    if not events:
        raise HTTPException(status_code=404, detail=f"Payment not found: {payment_id}")

    # Distinct types in first-seen order
    event_types = list(dict.fromkeys(e.event_type for e in events))
    first_event, last_event = events[0], events[-1]

    logger.info("Payment details retrieved", payment_id=payment_id, event_count=len(events))

    return PaymentDetails(
        payment_id=payment_id,
        total_events=len(events),
        event_types=event_types,
        first_event_at=first_event.received_at,
        last_event_at=last_event.received_at,
        current_status=last_event.event_type,
        events=[PaymentEventDetail.model_validate(e) for e in events],
    )
