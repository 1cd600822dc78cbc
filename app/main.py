import asyncio
import time
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any, cast

import anyio
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from app.api import payments, webhooks
from app.core.config import settings
from app.core.db_utils import check_db_connection
from app.core.errors import StoreUnavailableError, init_sentry, is_sentry_enabled
from app.core.logging_config import get_logger
from app.core.rate_limit import RateLimiter
from app.core.signature import SignatureVerifier
from app.db import create_db_and_tables, engine
from app.middleware.context import RequestContextMiddleware
from app.middleware.security import SecurityHeadersMiddleware

logger = get_logger(__name__)

STARTED_AT = time.monotonic()


async def sweep_rate_limiter(limiter: RateLimiter, interval: float) -> None:
    """Evict identities whose window has expired so the limiter map stays bounded."""
    while True:
        await asyncio.sleep(interval)
        evicted = limiter.sweep()
        if evicted:
            logger.info("Rate limiter sweep", evicted=evicted, tracked=len(limiter))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Limit AnyIO worker threads so concurrent webhook deliveries can't exhaust the DB pool
    thread_limiter = anyio.to_thread.current_default_thread_limiter()  # type: ignore[attr-defined]
    max_workers = max(1, settings.THREADPOOL_MAX_WORKERS)
    if thread_limiter.total_tokens != max_workers:
        logger.info(
            "Configuring AnyIO thread limiter",
            previous=thread_limiter.total_tokens,
            workers=max_workers,
        )
        thread_limiter.total_tokens = max_workers

    # Missing secret raises ConfigurationError here, before serving any request
    app.state.verifier = SignatureVerifier(settings.WEBHOOK_SECRET)
    app.state.rate_limiter = RateLimiter(
        max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
    )

    init_sentry(
        settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        release=settings.VERSION,
    )

    if settings.AUTO_CREATE_TABLES:
        create_db_and_tables()
    if check_db_connection(engine):
        logger.info("Database connection successful")
    else:
        logger.error("Database connection failed, webhook deliveries will get 503 until it recovers")

    logger.info(
        "Webhook Payment Listener started",
        version=settings.VERSION,
        environment=settings.ENVIRONMENT,
        error_tracking="sentry" if is_sentry_enabled() else "logs only",
        rate_limit=f"{settings.RATE_LIMIT_MAX_REQUESTS}/{settings.RATE_LIMIT_WINDOW_SECONDS}s",
    )

    sweep_task = asyncio.create_task(
        sweep_rate_limiter(app.state.rate_limiter, max(1, settings.RATE_LIMIT_SWEEP_INTERVAL_SECONDS))
    )

    try:
        yield
    finally:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
        app.state.rate_limiter.clear()
        engine.dispose()
        logger.info("Webhook Payment Listener stopped")


app = FastAPI(title=settings.PROJECT_NAME, version=settings.VERSION, lifespan=lifespan)


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"error": "STORE_UNAVAILABLE", "message": "Event store is temporarily unavailable"},
        headers={"Retry-After": str(webhooks.STORE_RETRY_AFTER_SECONDS)},
    )


# Outermost middleware is added last: CORS -> proxy headers -> request context -> security headers
app.add_middleware(cast(Any, SecurityHeadersMiddleware))
app.add_middleware(cast(Any, RequestContextMiddleware))
app.add_middleware(cast(Any, ProxyHeadersMiddleware), trusted_hosts=settings.forwarded_allow_ips)
app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=settings.allowed_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization", *webhooks.SIGNATURE_HEADERS[:2]],
    expose_headers=["X-Request-ID", "Retry-After"],
)

app.include_router(webhooks.router)
app.include_router(payments.router)


@app.get("/")
def root():
    return {
        "name": settings.PROJECT_NAME,
        "version": settings.VERSION,
        "description": "Secure webhook listener for payment providers",
        "endpoints": {
            "POST /webhook/payments": "Receive payment webhook events",
            "GET /webhook/status": "Webhook service status",
            "GET /payments": "All payments with latest status",
            "GET /payments/{payment_id}": "Payment details",
            "GET /payments/{payment_id}/events": "Events of a payment",
            "GET /health": "Health check",
        },
        "documentation": "/docs",
    }


@app.get("/health")
def health():
    """Health check including database reachability."""
    database_ok = check_db_connection(engine)
    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "healthy" if database_ok else "degraded",
            "database": "ok" if database_ok else "unavailable",
            "error_tracking": "sentry" if is_sentry_enabled() else "disabled",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(time.monotonic() - STARTED_AT, 1),
            "version": settings.VERSION,
        },
    )
