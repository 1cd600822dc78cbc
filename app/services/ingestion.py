"""
Webhook ingestion pipeline.

Turns a raw webhook delivery into at most one stored PaymentEvent:

    rate limit -> signature -> parse -> validate -> idempotent admission

Admission per event_id:
    1. Look the event up. Found: DUPLICATE (sequential redelivery, the common case).
    2. Not found: insert, guarded by the unique index on event_id.
    3. Unique violation: a concurrent delivery won the race. Re-read, DUPLICATE.
    4. Inserted: ADMITTED with the server-assigned received_at.

The lookup and the insert are not atomic, so step 1 is only an optimisation;
the database constraint decides. No in-process lock is involved because this
process is not assumed to be the only writer.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from app.core.errors import StoreUnavailableError, capture_exception
from app.core.logging_config import get_logger
from app.core.metrics import IngestionMetrics, ingestion_metrics
from app.core.rate_limit import RateLimiter
from app.core.signature import SignatureVerifier
from app.models.payment_event import PaymentEvent
from app.schemas import WebhookPayload
from app.services.event_store import EventStore, Inserted

logger = get_logger(__name__)

REQUIRED_FIELDS = ("event_id", "event_type", "payment_id")
JSON_CONTENT_TYPES = ("application/json",)


class AdmissionOutcome(str, Enum):
    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    RATE_LIMITED = "RATE_LIMITED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    MALFORMED_JSON = "MALFORMED_JSON"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FIELD = "INVALID_FIELD"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


@dataclass(frozen=True)
class AdmissionResult:
    outcome: AdmissionOutcome
    record: Optional[PaymentEvent] = None
    reason: Optional[RejectionReason] = None
    field_name: Optional[str] = None
    retry_after: Optional[int] = None
    details: Tuple[Dict[str, str], ...] = ()

    @property
    def accepted(self) -> bool:
        return self.outcome is not AdmissionOutcome.REJECTED

    @property
    def duplicate(self) -> bool:
        return self.outcome is AdmissionOutcome.DUPLICATE


class PayloadError(ValueError):
    """The body could not be turned into a valid WebhookPayload."""

    def __init__(self, reason: RejectionReason, field_name: Optional[str] = None, details=()):
        self.reason = reason
        self.field_name = field_name
        self.details = tuple(details)
        super().__init__(f"{reason.value}({field_name})" if field_name else reason.value)


def is_json_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in JSON_CONTENT_TYPES or media_type.endswith("+json")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-standard JSON constant: {name}")


def parse_payload(raw_body: bytes) -> Dict[str, Any]:
    """
    Decode the raw body; the top level must be a JSON object.

    NaN/Infinity literals and lone surrogate escapes are rejected: the stored
    payload has to be re-encodable as standard UTF-8 JSON.
    """
    try:
        # JSONDecodeError and UnicodeDecodeError are both ValueErrors
        payload = json.loads(raw_body, parse_constant=_reject_constant)
    except (ValueError, RecursionError):
        raise PayloadError(
            RejectionReason.MALFORMED_JSON,
            details=[{"message": "Request body must be valid JSON"}],
        )
    if not isinstance(payload, dict):
        raise PayloadError(
            RejectionReason.MALFORMED_JSON,
            details=[{"message": "Request body must be a JSON object"}],
        )

    try:
        json.dumps(payload, ensure_ascii=False).encode("utf-8")
    except UnicodeEncodeError:
        raise PayloadError(
            RejectionReason.MALFORMED_JSON,
            details=[{"message": "Request body contains invalid unicode escapes"}],
        )
    return payload


def validate_payload(payload: Dict[str, Any]) -> WebhookPayload:
    """
    Check required fields. Absent, null and empty values are MISSING_FIELD;
    wrong type, length or unknown event_type are INVALID_FIELD.
    """
    missing = [name for name in REQUIRED_FIELDS if payload.get(name) in (None, "")]
    if missing:
        raise PayloadError(
            RejectionReason.MISSING_FIELD,
            field_name=missing[0],
            details=[{"field": name, "message": f"{name} is required"} for name in missing],
        )

    try:
        return WebhookPayload.model_validate(payload)
    except ValidationError as e:
        errors = {}
        for error in e.errors():
            name = str(error["loc"][0]) if error["loc"] else "body"
            errors.setdefault(name, error["msg"])
        ordered = [name for name in REQUIRED_FIELDS if name in errors]
        ordered += [name for name in errors if name not in REQUIRED_FIELDS]
        raise PayloadError(
            RejectionReason.INVALID_FIELD,
            field_name=ordered[0],
            details=[{"field": name, "message": errors[name]} for name in ordered],
        )


def _signature_preview(signature: Optional[str]) -> Optional[str]:
    if not signature:
        return None
    return signature[:20] + "..." if len(signature) > 20 else signature


class IngestionPipeline:
    """
    Admission entry point for the HTTP layer.

    The verifier and rate limiter are long-lived (built at startup); the
    store is per request.
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        rate_limiter: RateLimiter,
        store: EventStore,
        metrics: IngestionMetrics = ingestion_metrics,
    ):
        self.verifier = verifier
        self.rate_limiter = rate_limiter
        self.store = store
        self.metrics = metrics

    def admit(
        self,
        raw_body: Optional[bytes],
        declared_signature: Optional[str],
        source_identity: str,
        now: Optional[datetime] = None,
        content_type: Optional[str] = None,
    ) -> AdmissionResult:
        """
        Run one delivery through the pipeline.

        ``now`` is the server clock for both the rate limiter and
        ``received_at``. ``content_type`` is checked only when given.
        """
        if now is None:
            now = datetime.now(timezone.utc)
        timestamp = now.timestamp()

        if not self.rate_limiter.allow(source_identity, timestamp):
            retry_after = max(1, self.rate_limiter.retry_after(source_identity, timestamp))
            logger.warning(
                "Rate limit exceeded",
                source=source_identity,
                max_requests=self.rate_limiter.max_requests,
                retry_after=retry_after,
            )
            return self._reject(RejectionReason.RATE_LIMITED, retry_after=retry_after)

        if not self.verifier.verify(raw_body, declared_signature):
            logger.warning(
                "Invalid webhook signature",
                source=source_identity,
                signature=_signature_preview(declared_signature),
                body_length=len(raw_body) if raw_body else 0,
            )
            return self._reject(RejectionReason.UNAUTHENTICATED)

        try:
            if content_type is not None and not is_json_content_type(content_type):
                raise PayloadError(
                    RejectionReason.MALFORMED_JSON,
                    details=[{"message": "Content-Type must be application/json"}],
                )
            payload = parse_payload(raw_body)
            event = validate_payload(payload)
        except PayloadError as e:
            logger.info(
                "Webhook payload rejected",
                source=source_identity,
                reason=e.reason.value,
                field=e.field_name,
            )
            return self._reject(e.reason, field_name=e.field_name, details=e.details)

        return self._admit_event(event, payload, now)

    def _admit_event(self, event: WebhookPayload, payload: Dict[str, Any], received_at: datetime) -> AdmissionResult:
        log = logger.bind(
            event_id=event.event_id,
            event_type=event.event_type.value,
            payment_id=event.payment_id,
        )
        log.info("Processing webhook event")

        try:
            existing = self.store.find_by_event_id(event.event_id)
            if existing is not None:
                log.info("Duplicate event detected, returning existing event", existing_id=existing.id)
                return self._duplicate(existing)

            result = self.store.insert(
                event_id=event.event_id,
                payment_id=event.payment_id,
                event_type=event.event_type.value,
                payload=payload,
                received_at=received_at,
            )
            if isinstance(result, Inserted):
                log.info("Webhook event admitted", db_id=result.record.id)
                self.metrics.record_admitted(result.record.received_at)
                return AdmissionResult(AdmissionOutcome.ADMITTED, record=result.record)

            log.warning("Race condition detected for duplicate event")
            existing = self.store.find_by_event_id(event.event_id)
            if existing is None:
                # Constraint fired but the winning row is not visible: outcome unknown
                raise StoreUnavailableError("find_by_event_id after unique violation")
            return self._duplicate(existing)

        except StoreUnavailableError as e:
            capture_exception(
                e,
                context={
                    "event_id": event.event_id,
                    "payment_id": event.payment_id,
                },
                tags={"component": "ingestion", "store_operation": e.operation},
            )
            return self._reject(RejectionReason.STORE_UNAVAILABLE)

    def _duplicate(self, record: PaymentEvent) -> AdmissionResult:
        self.metrics.record_duplicate()
        return AdmissionResult(AdmissionOutcome.DUPLICATE, record=record)

    def _reject(
        self,
        reason: RejectionReason,
        field_name: Optional[str] = None,
        retry_after: Optional[int] = None,
        details=(),
    ) -> AdmissionResult:
        self.metrics.record_rejected(reason.value)
        return AdmissionResult(
            AdmissionOutcome.REJECTED,
            reason=reason,
            field_name=field_name,
            retry_after=retry_after,
            details=tuple(details),
        )
