"""
Event store: persistence interface consumed by the ingestion pipeline,
and its SQL implementation over the payment_events table.

Duplicate detection is part of the insert contract: ``insert`` returns
``Inserted`` or ``UniqueViolation`` instead of raising, so the pipeline can
treat a lost race as an ordinary outcome. Every other database failure is
raised as StoreUnavailableError.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from app.core.db_utils import db_retry
from app.core.errors import StoreUnavailableError
from app.core.logging_config import get_logger
from app.models.payment_event import PaymentEvent

logger = get_logger(__name__)


@dataclass(frozen=True)
class Inserted:
    record: PaymentEvent


@dataclass(frozen=True)
class UniqueViolation:
    event_id: str


InsertResult = Union[Inserted, UniqueViolation]


@dataclass(frozen=True)
class PaymentStatus:
    """Latest known state of one payment."""

    payment_id: str
    latest_event_type: str
    last_updated: datetime
    event_count: int


class EventStore(Protocol):
    def find_by_event_id(self, event_id: str) -> Optional[PaymentEvent]: ...

    def insert(
        self,
        event_id: str,
        payment_id: str,
        event_type: str,
        payload: Dict[str, Any],
        received_at: datetime,
    ) -> InsertResult: ...

    def find_by_payment_id(self, payment_id: str) -> List[PaymentEvent]: ...


class SqlEventStore:
    """EventStore backed by a SQLModel session (one session per request)."""

    def __init__(self, session: Session):
        self.session = session

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except StoreUnavailableError:
            raise
        except SQLAlchemyError as e:
            logger.warning("Event store operation failed", operation=operation, error=str(e))
            self.session.rollback()
            raise StoreUnavailableError(operation, e) from e

    @contextmanager
    def _rollback_on_error(self) -> Iterator[None]:
        # A failed statement invalidates the transaction; reset it so a retry can run
        try:
            yield
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def find_by_event_id(self, event_id: str) -> Optional[PaymentEvent]:
        with self._guard("find_by_event_id"):
            return self.session.exec(
                select(PaymentEvent).where(PaymentEvent.event_id == event_id)
            ).first()

    def insert(
        self,
        event_id: str,
        payment_id: str,
        event_type: str,
        payload: Dict[str, Any],
        received_at: datetime,
    ) -> InsertResult:
        event = PaymentEvent(
            event_id=event_id,
            payment_id=payment_id,
            event_type=event_type,
            payload=payload,
            received_at=received_at,
        )
        with self._guard("insert"):
            try:
                self.session.add(event)
                self.session.commit()
            except IntegrityError:
                # Only event_id carries a constraint a validated payload can violate
                self.session.rollback()
                return UniqueViolation(event_id=event_id)
            self.session.refresh(event)
        return Inserted(record=event)

    def find_by_payment_id(self, payment_id: str) -> List[PaymentEvent]:
        with self._guard("find_by_payment_id"):
            return self._find_by_payment_id(payment_id)

    @db_retry(max_retries=2, base_delay=0.2)
    def _find_by_payment_id(self, payment_id: str) -> List[PaymentEvent]:
        with self._rollback_on_error():
            return list(
                self.session.exec(
                    select(PaymentEvent)
                    .where(PaymentEvent.payment_id == payment_id)
                    .order_by(PaymentEvent.received_at.asc(), PaymentEvent.id.asc())
                ).all()
            )

    def list_recent(self, limit: int = 50, offset: int = 0) -> List[PaymentEvent]:
        """Newest events first."""
        with self._guard("list_recent"):
            return list(
                self.session.exec(
                    select(PaymentEvent)
                    .order_by(PaymentEvent.received_at.desc(), PaymentEvent.id.desc())
                    .limit(limit)
                    .offset(offset)
                ).all()
            )

    def latest_per_payment(self, limit: int = 50, offset: int = 0) -> List[PaymentStatus]:
        """One row per payment_id with its latest event, most recently updated first."""
        with self._guard("latest_per_payment"):
            return self._latest_per_payment(limit, offset)

    @db_retry(max_retries=2, base_delay=0.2)
    def _latest_per_payment(self, limit: int, offset: int) -> List[PaymentStatus]:
        ranked = select(
            PaymentEvent.payment_id.label("payment_id"),
            PaymentEvent.event_type.label("event_type"),
            PaymentEvent.received_at.label("received_at"),
            func.row_number()
            .over(
                partition_by=PaymentEvent.payment_id,
                order_by=(PaymentEvent.received_at.desc(), PaymentEvent.id.desc()),
            )
            .label("row_rank"),
            func.count().over(partition_by=PaymentEvent.payment_id).label("event_count"),
        ).subquery()

        with self._rollback_on_error():
            rows = self.session.execute(
                select(
                    ranked.c.payment_id,
                    ranked.c.event_type,
                    ranked.c.received_at,
                    ranked.c.event_count,
                )
                .where(ranked.c.row_rank == 1)
                .order_by(ranked.c.received_at.desc(), ranked.c.payment_id.asc())
                .limit(limit)
                .offset(offset)
            ).all()

        return [
            PaymentStatus(
                payment_id=row.payment_id,
                latest_event_type=row.event_type,
                last_updated=row.received_at,
                event_count=row.event_count,
            )
            for row in rows
        ]

    def count_payments(self) -> int:
        with self._guard("count_payments"):
            return self.session.exec(
                select(func.count(func.distinct(PaymentEvent.payment_id)))
            ).one()
