"""Public entrypoint for notification submission and status polling.

The gateway resolves the bearer credential to a tenant, applies per-tenant
rate limiting and idempotency, then hands the request to the outbox writer.
Delivery outcomes are never returned here; callers poll the status endpoint.
"""

import asyncio
from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

import redis
from fastapi import BackgroundTasks, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from notifly.common.collaborators import build_credential_verifier, resolve_tenant
from notifly.common.config import settings
from notifly.common.db import SessionLocal
from notifly.common.errors import install_error_handlers
from notifly.common.logging import configure_logging, correlation_id_ctx, logger, tenant_id_ctx
from notifly.common.metrics import (
    http_request_duration_seconds,
    http_requests_total,
    metrics_response,
    submission_latency_seconds,
)
from notifly.common.startup import log_startup_config
from notifly.common.tracing import instrument_app, setup_tracing
from notifly.services.gateway.rate_limit import RateLimiter
from notifly.services.gateway.schemas import (
    DeliveryAttemptView,
    NotificationStatusResponse,
    NotificationView,
    SubmitNotificationRequest,
    SubmitNotificationResponse,
)
from notifly.services.gateway.service import IngestionService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "KAFKA_BOOTSTRAP_SERVERS",
        "AUTH_SERVICE_URL",
        "RATE_LIMIT_PER_MINUTE",
        "RATE_LIMIT_WINDOW_SECONDS",
    ],
)
rdb = redis.Redis.from_url(settings.redis_url, decode_responses=True)
service = IngestionService(
    SessionLocal,
    rate_limiter=RateLimiter(rdb, SessionLocal),
    credential_verifier=build_credential_verifier(),
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the outbox relay alongside the HTTP server."""

    relay_task = asyncio.create_task(service.outbox_publisher())
    yield
    relay_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Notifly Ingestion Gateway", lifespan=lifespan)
instrument_app(app)
install_error_handlers(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


async def publish_after_accept(request_id: str) -> None:
    """Best-effort immediate publish; a miss stays `PENDING` for the relay."""

    try:
        await service.publish_pending(request_id)
    except SQLAlchemyError as exc:
        logger.error("immediate_publish_failed request_id=%s error=%s", request_id, exc)


@app.post("/notifications", status_code=202)
async def submit_notification(
    req: SubmitNotificationRequest,
    background_tasks: BackgroundTasks,
    authorization: str | None = Header(default=None),
    idempotency_key: str | None = Header(default=None),
    x_correlation_id: str | None = Header(default=None),
):
    """Accept a notification for asynchronous delivery (202, not yet delivered)."""

    correlation_id = x_correlation_id or str(uuid4())
    correlation_id_ctx.set(correlation_id)
    tenant_id = await resolve_tenant(service.credential_verifier, authorization)
    tenant_id_ctx.set(tenant_id)

    with submission_latency_seconds.labels(service=settings.service_name).time():
        result = service.submit(
            tenant_id,
            event_type=req.event_type,
            payload=req.payload,
            correlation_id=correlation_id,
            user_id=req.user_id,
            idempotency_key=req.idempotency_key or idempotency_key,
            channels=req.channels,
        )
    if not result.duplicate:
        background_tasks.add_task(publish_after_accept, result.request_id)
    body = SubmitNotificationResponse(request_id=result.request_id, correlation_id=result.correlation_id)
    return JSONResponse(status_code=202, content=body.model_dump(by_alias=True))


@app.get("/notifications/{request_id}")
async def get_notification(request_id: str, authorization: str | None = Header(default=None)):
    """Return the request, its derived status and every delivery attempt."""

    tenant_id = await resolve_tenant(service.credential_verifier, authorization)
    request, status, logs = service.get_status(tenant_id, request_id)
    body = NotificationStatusResponse(
        notification=NotificationView.model_validate(request),
        status=status,
        logs=[DeliveryAttemptView.model_validate(log) for log in logs],
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}
