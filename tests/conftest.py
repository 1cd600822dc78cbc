"""
Test fixtures for the webhook payment listener.

Provides database session fixtures, a signing helper and an API client
wired to an in-memory database.
"""

import json
import os

# Settings are read on import, so the environment must be prepared first
os.environ.setdefault("WEBHOOK_SECRET", "test_secret")
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["SENTRY_DSN"] = ""

import pytest
from typing import Any, Dict, Generator
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401  (registers tables with SQLModel metadata)
from app.core.metrics import IngestionMetrics, ingestion_metrics
from app.core.rate_limit import RateLimiter
from app.core.signature import SignatureVerifier
from app.services.event_store import SqlEventStore
from app.services.ingestion import IngestionPipeline

TEST_SECRET = os.environ["WEBHOOK_SECRET"]

# In-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite:///:memory:"


def encode(payload: Any) -> bytes:
    """Serialize a payload the way a provider would send it."""
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def make_event(
    event_id: str = "evt_1",
    event_type: str = "payment_captured",
    payment_id: str = "pay_9",
    **extra: Any,
) -> Dict[str, Any]:
    return {"event_id": event_id, "event_type": event_type, "payment_id": payment_id, **extra}


@pytest.fixture(autouse=True)
def reset_ingestion_metrics():
    """Global counters are shared by every pipeline built by the API."""
    ingestion_metrics.reset()
    yield


@pytest.fixture(scope="function")
def test_engine():
    """Create a test database engine with in-memory SQLite."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_session(test_engine) -> Generator[Session, None, None]:
    """Provide a test database session."""
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(TEST_SECRET)


@pytest.fixture
def rate_limiter() -> RateLimiter:
    """Limiter generous enough that ordinary tests never hit it."""
    return RateLimiter(max_requests=1000, window_seconds=60)


@pytest.fixture
def metrics() -> IngestionMetrics:
    return IngestionMetrics()


@pytest.fixture
def store(test_session: Session) -> SqlEventStore:
    return SqlEventStore(test_session)


@pytest.fixture
def pipeline(verifier, rate_limiter, store, metrics) -> IngestionPipeline:
    return IngestionPipeline(verifier, rate_limiter, store, metrics=metrics)


@pytest.fixture
def client(test_engine) -> Generator[TestClient, None, None]:
    """
    API client backed by the test engine.

    Entering the client runs the application lifespan, which builds the
    verifier and rate limiter from settings.
    """
    from app.db import get_session
    from app.main import app

    def get_test_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = get_test_session
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def signed_post(client, verifier):
    """POST a body to the webhook endpoint with a valid signature."""

    def _post(body: bytes, header: str = "X-Webhook-Signature", **kwargs):
        headers = {"Content-Type": "application/json", header: verifier.signature_header(body)}
        headers.update(kwargs.pop("headers", {}))
        return client.post("/webhook/payments", content=body, headers=headers, **kwargs)

    return _post
