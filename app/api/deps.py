from fastapi import Depends, Request
from sqlmodel import Session

from app.core.rate_limit import RateLimiter
from app.core.signature import SignatureVerifier
from app.db import get_session
from app.services.event_store import SqlEventStore
from app.services.ingestion import IngestionPipeline


def get_verifier(request: Request) -> SignatureVerifier:
    """Verifier built once in the application lifespan."""
    return request.app.state.verifier


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_event_store(session: Session = Depends(get_session)) -> SqlEventStore:
    return SqlEventStore(session)


def get_pipeline(
    verifier: SignatureVerifier = Depends(get_verifier),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    store: SqlEventStore = Depends(get_event_store),
) -> IngestionPipeline:
    return IngestionPipeline(verifier=verifier, rate_limiter=rate_limiter, store=store)
