"""
API tests for the webhook receiver.

Tests cover:
- HTTP status mapping of every admission outcome
- Accepted signature headers
- Rate limiting with Retry-After
- Store outages surfacing as 503
- Status endpoint, health check and request ids
- Startup failure without a webhook secret
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.api.deps import get_event_store
from app.core.errors import ConfigurationError, StoreUnavailableError
from app.core.rate_limit import RateLimiter
from app.core.signature import SignatureVerifier
from app.models.payment_event import PaymentEvent
from conftest import encode, make_event


def count_events(engine) -> int:
    with Session(engine) as session:
        return len(session.exec(select(PaymentEvent)).all())


class UnavailableStore:
    """Store whose backing database is down."""

    def find_by_event_id(self, event_id):
        raise StoreUnavailableError("find_by_event_id", ConnectionRefusedError())

    def insert(self, **kwargs):
        raise StoreUnavailableError("insert", ConnectionRefusedError())

    def find_by_payment_id(self, payment_id):
        raise StoreUnavailableError("find_by_payment_id", ConnectionRefusedError())

    def list_recent(self, limit=50, offset=0):
        raise StoreUnavailableError("list_recent", ConnectionRefusedError())


@pytest.fixture
def unavailable_store(client):
    client.app.dependency_overrides[get_event_store] = UnavailableStore
    yield
    client.app.dependency_overrides.pop(get_event_store, None)


class TestWebhookAdmission:
    """Tests for POST /webhook/payments."""

    def test_event_admitted(self, signed_post, test_engine):
        body = encode(make_event("evt_1", "payment_captured", "pay_9", amount=1200))

        response = signed_post(body)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Event processed successfully"
        assert data["duplicate"] is False
        assert data["event"]["event_id"] == "evt_1"
        assert data["event"]["payment_id"] == "pay_9"
        assert data["event"]["event_type"] == "payment_captured"
        assert data["event"]["payload"]["amount"] == 1200
        assert "received_at" in data["event"]
        assert count_events(test_engine) == 1

    def test_redelivery_is_duplicate(self, signed_post, test_engine):
        body = encode(make_event("evt_1"))

        first = signed_post(body)
        second = signed_post(body)

        assert second.status_code == 200
        assert second.json()["duplicate"] is True
        assert second.json()["message"] == "Event already processed"
        assert second.json()["event"]["id"] == first.json()["event"]["id"]
        assert count_events(test_engine) == 1

    @pytest.mark.parametrize("header", ["X-Webhook-Signature", "X-Hub-Signature-256", "Authorization"])
    def test_signature_headers_accepted(self, signed_post, header):
        response = signed_post(encode(make_event()), header=header)
        assert response.status_code == 200

    def test_invalid_signature(self, client, test_engine):
        body = encode(make_event())
        signature = SignatureVerifier("wrong").signature_header(body)

        response = client.post(
            "/webhook/payments",
            content=body,
            headers={"Content-Type": "application/json", "X-Webhook-Signature": signature},
        )

        assert response.status_code == 401
        assert response.json()["error"] == "UNAUTHENTICATED"
        assert count_events(test_engine) == 0

    def test_missing_signature(self, client):
        response = client.post(
            "/webhook/payments",
            content=encode(make_event()),
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 401

    def test_invalid_event_type(self, signed_post, test_engine):
        response = signed_post(encode(make_event("evt_2", "bogus_type", "pay_9")))

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "INVALID_FIELD"
        assert data["field"] == "event_type"
        assert data["details"][0]["field"] == "event_type"
        assert count_events(test_engine) == 0

    def test_missing_field(self, signed_post):
        payload = make_event()
        del payload["event_id"]

        response = signed_post(encode(payload))

        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_FIELD"
        assert response.json()["field"] == "event_id"

    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2, 3]", b"null"])
    def test_malformed_json(self, signed_post, body):
        response = signed_post(body)

        assert response.status_code == 400
        assert response.json()["error"] == "MALFORMED_JSON"

    @pytest.mark.parametrize("body", [
        rb'{"event_id":"evt_s2","event_type":"payment_captured","payment_id":"pay_9","note":"\udc00"}',
        b'{"event_id":"evt_nan","event_type":"payment_captured","payment_id":"pay_9","amount":NaN}',
        b'{"event_id":"evt_inf","event_type":"payment_captured","payment_id":"pay_9","amount":-Infinity}',
    ])
    def test_unstorable_json_rejected_on_every_delivery(self, signed_post, test_engine, body):
        """Bodies the store cannot keep verbatim are client errors, never stored."""
        first = signed_post(body)
        second = signed_post(body)

        for response in (first, second):
            assert response.status_code == 400
            assert response.json()["error"] == "MALFORMED_JSON"
            assert "Retry-After" not in response.headers
        assert count_events(test_engine) == 0

    def test_received_at_carries_utc_offset(self, signed_post):
        response = signed_post(encode(make_event()))

        received_at = datetime.fromisoformat(response.json()["event"]["received_at"])
        assert received_at.utcoffset() == timedelta(0)

    def test_non_json_content_type(self, signed_post):
        response = signed_post(encode(make_event()), headers={"Content-Type": "text/plain"})

        assert response.status_code == 400
        assert response.json()["error"] == "MALFORMED_JSON"

    def test_rate_limited(self, client, signed_post):
        client.app.state.rate_limiter = RateLimiter(max_requests=2, window_seconds=60)

        assert signed_post(encode(make_event("evt_1"))).status_code == 200
        assert signed_post(encode(make_event("evt_2"))).status_code == 200
        response = signed_post(encode(make_event("evt_3")))

        assert response.status_code == 429
        assert response.json()["error"] == "RATE_LIMITED"
        assert 1 <= int(response.headers["Retry-After"]) <= 60
        assert response.json()["retry_after"] == int(response.headers["Retry-After"])

    def test_store_unavailable(self, signed_post, unavailable_store):
        response = signed_post(encode(make_event()))

        assert response.status_code == 503
        assert response.json()["error"] == "STORE_UNAVAILABLE"
        assert response.headers["Retry-After"] == "30"


class TestWebhookStatus:
    """Tests for GET /webhook/status."""

    def test_status_reports_counts(self, client, signed_post):
        signed_post(encode(make_event("evt_1")))
        signed_post(encode(make_event("evt_1")))
        signed_post(encode(make_event("evt_2", "bogus_type")))

        response = client.get("/webhook/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "operational"
        assert data["recent_events"] == 1
        assert data["last_event_at"] is not None
        assert data["ingestion"]["admitted"] == 1
        assert data["ingestion"]["duplicates"] == 1
        assert data["ingestion"]["rejected"] == {"INVALID_FIELD": 1}

    def test_status_when_store_unavailable(self, client, unavailable_store):
        response = client.get("/webhook/status")

        assert response.status_code == 503
        assert response.json()["error"] == "STORE_UNAVAILABLE"


class TestServiceEndpoints:
    """Tests for root, health and request ids."""

    def test_root_lists_endpoints(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "POST /webhook/payments" in response.json()["endpoints"]

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["database"] == "ok"
        assert response.json()["error_tracking"] == "disabled"

    def test_security_headers(self, client, signed_post):
        for response in (client.get("/"), signed_post(b"{not json")):
            assert response.headers["X-Content-Type-Options"] == "nosniff"
            assert response.headers["X-Frame-Options"] == "SAMEORIGIN"
            assert "default-src 'self'" in response.headers["Content-Security-Policy"]

    def test_docs_served_without_csp(self, client):
        response = client.get("/docs")

        assert response.status_code == 200
        assert "Content-Security-Policy" not in response.headers
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_request_id_generated(self, client):
        response = client.get("/")
        assert response.headers["X-Request-ID"].startswith("req_")

    def test_request_id_echoed(self, client):
        response = client.get("/", headers={"X-Request-ID": "provider-delivery-42"})
        assert response.headers["X-Request-ID"] == "provider-delivery-42"

    def test_unsafe_request_id_replaced(self, client):
        response = client.get("/", headers={"X-Request-ID": "bad id; level=critical"})
        assert response.headers["X-Request-ID"].startswith("req_")


class TestStartup:
    """Tests for application lifespan configuration."""

    def test_missing_secret_fails_startup(self, monkeypatch):
        """The service refuses to start rather than accept unsigned events."""
        from app.core.config import settings
        from app.main import app, lifespan

        monkeypatch.setattr(settings, "WEBHOOK_SECRET", "")

        async def start():
            async with lifespan(app):
                pass

        with pytest.raises(ConfigurationError):
            asyncio.run(start())

    def test_rate_limiter_cleared_on_shutdown(self, test_engine, verifier):
        from app.db import get_session
        from app.main import app

        def get_test_session():
            with Session(test_engine) as session:
                yield session

        app.dependency_overrides[get_session] = get_test_session
        try:
            with TestClient(app) as test_client:
                body = encode(make_event())
                test_client.post(
                    "/webhook/payments",
                    content=body,
                    headers={"Content-Type": "application/json", "X-Webhook-Signature": verifier.signature_header(body)},
                )
                limiter = test_client.app.state.rate_limiter
                assert len(limiter) == 1
        finally:
            app.dependency_overrides.clear()

        assert len(limiter) == 0

    def test_verifier_built_once(self, client):
        verifier = client.app.state.verifier
        client.get("/")
        assert client.app.state.verifier is verifier
