"""
Webhook receiver for payment provider events.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from app.api.deps import get_event_store, get_pipeline
from app.core.logging_config import get_logger
from app.core.metrics import ingestion_metrics
from app.core.rate_limit import get_client_ip
from app.schemas import PaymentEventOut, WebhookAck, WebhookStatus
from app.services.event_store import SqlEventStore
from app.services.ingestion import AdmissionResult, IngestionPipeline, RejectionReason

logger = get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])

# First header present wins
SIGNATURE_HEADERS = ("X-Webhook-Signature", "X-Hub-Signature-256", "Authorization")

REJECTION_STATUS = {
    RejectionReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    RejectionReason.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    RejectionReason.MALFORMED_JSON: status.HTTP_400_BAD_REQUEST,
    RejectionReason.MISSING_FIELD: status.HTTP_400_BAD_REQUEST,
    RejectionReason.INVALID_FIELD: status.HTTP_400_BAD_REQUEST,
    RejectionReason.STORE_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

REJECTION_MESSAGES = {
    RejectionReason.RATE_LIMITED: "Rate limit exceeded. Please try again later.",
    RejectionReason.UNAUTHENTICATED: "Invalid or missing webhook signature",
    RejectionReason.MALFORMED_JSON: "Request body must be a valid JSON object",
    RejectionReason.MISSING_FIELD: "Missing required field",
    RejectionReason.INVALID_FIELD: "Invalid field value",
    RejectionReason.STORE_UNAVAILABLE: "Event could not be recorded, please retry delivery",
}

# Suggested redelivery delay when the store is down
STORE_RETRY_AFTER_SECONDS = 30


def get_signature_header(request: Request) -> str | None:
    for name in SIGNATURE_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return None


def rejection_response(result: AdmissionResult) -> JSONResponse:
    reason = result.reason
    content = {
        "error": reason.value,
        "message": REJECTION_MESSAGES[reason],
    }
    headers = {}

    if result.field_name:
        content["field"] = result.field_name
        content["message"] = f"{REJECTION_MESSAGES[reason]}: {result.field_name}"
    if result.details:
        content["details"] = list(result.details)
    if reason is RejectionReason.RATE_LIMITED:
        content["retry_after"] = result.retry_after
        headers["Retry-After"] = str(result.retry_after)
    elif reason is RejectionReason.STORE_UNAVAILABLE:
        headers["Retry-After"] = str(STORE_RETRY_AFTER_SECONDS)

    return JSONResponse(status_code=REJECTION_STATUS[reason], content=content, headers=headers)


@router.post("/payments", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    pipeline: IngestionPipeline = Depends(get_pipeline),
):
    """
    Receive a payment provider event.

    The signature is checked against the raw body bytes exactly as sent.
    Redelivery of an already recorded event_id returns 200 with
    ``duplicate: true`` and the stored event.
    """
    body = await request.body()

    # Store I/O blocks; keep it off the event loop
    result = await run_in_threadpool(
        pipeline.admit,
        body,
        get_signature_header(request),
        get_client_ip(request),
        datetime.now(timezone.utc),
        request.headers.get("content-type", ""),
    )

    if not result.accepted:
        return rejection_response(result)

    event = PaymentEventOut.model_validate(result.record)
    if result.duplicate:
        return WebhookAck(message="Event already processed", event=event, duplicate=True)
    return WebhookAck(message="Event processed successfully", event=event)


@router.get("/status", response_model=WebhookStatus)
def webhook_status(store: SqlEventStore = Depends(get_event_store)):
    """Webhook service status, for monitoring."""
    recent_events = store.list_recent(limit=5)

    return WebhookStatus(
        status="operational",
        message="Webhook endpoint is ready to receive events",
        recent_events=len(recent_events),
        last_event_at=recent_events[0].received_at if recent_events else None,
        ingestion=ingestion_metrics.get_summary(),
        timestamp=datetime.now(timezone.utc),
    )
