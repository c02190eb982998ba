"""Dead letter admin API + DLQ topic consumer lifecycle.

Every endpoint needs a tenant bearer credential (the tenant scope) and the
shared `X-Admin-Key` operator secret.
"""

import asyncio
import math
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header
from fastapi.responses import JSONResponse

from notifly.common.collaborators import build_credential_verifier, resolve_tenant
from notifly.common.config import settings
from notifly.common.db import SessionLocal
from notifly.common.errors import Forbidden, ValidationFailed, install_error_handlers
from notifly.common.logging import configure_logging, tenant_id_ctx
from notifly.common.metrics import metrics_response
from notifly.common.startup import log_startup_config
from notifly.common.tracing import instrument_app, setup_tracing
from notifly.services.dlq.schemas import DeadLetterPage, DeadLetterView, RetryBatchRequest, RetryBatchResponse
from notifly.services.dlq.service import DeadLetterFilter, DeadLetterService

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "AUTH_SERVICE_URL", "AUDIT_SERVICE_URL", "ADMIN_API_KEY"],
)
service = DeadLetterService(SessionLocal)
credential_verifier = build_credential_verifier()


async def admin_tenant(authorization: str | None, x_admin_key: str | None) -> str:
    """Resolve the tenant scope and enforce the operator key."""

    tenant_id = await resolve_tenant(credential_verifier, authorization)
    if x_admin_key != settings.admin_api_key:
        raise Forbidden("admin access required")
    tenant_id_ctx.set(tenant_id)
    return tenant_id


def _view(row) -> dict:
    return DeadLetterView.model_validate(row).model_dump(mode="json", by_alias=True)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run the DLQ topic consumer with the application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()
    await service.kafka.close()


app = FastAPI(title="Notifly Dead Letter Service", lifespan=lifespan)
instrument_app(app)
install_error_handlers(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


@app.get("/admin/dlq")
async def list_dead_letters(
    channel: str | None = None,
    errorCode: str | None = None,
    isUnrecoverable: bool | None = None,
    search: str | None = None,
    status: str | None = None,
    page: int = 0,
    size: int = 20,
    authorization: str | None = Header(default=None),
    x_admin_key: str | None = Header(default=None),
):
    """List dead letters; without `status`, re-queued rows are left out."""

    tenant_id = await admin_tenant(authorization, x_admin_key)
    if page < 0 or not 1 <= size <= 200:
        raise ValidationFailed("page must be >= 0 and size between 1 and 200")
    flt = DeadLetterFilter(
        channel=channel,
        error_code=errorCode,
        is_unrecoverable=isUnrecoverable,
        search=search,
        status=status or None,
    )
    rows, total = service.list(tenant_id, flt, page=page, size=size)
    body = DeadLetterPage(
        data=[DeadLetterView.model_validate(row) for row in rows],
        total=total,
        page=page,
        size=size,
        total_pages=math.ceil(total / size),
    )
    return JSONResponse(content=body.model_dump(mode="json", by_alias=True))


@app.post("/admin/dlq/retry-batch")
async def retry_dead_letter_batch(
    req: RetryBatchRequest,
    authorization: str | None = Header(default=None),
    x_admin_key: str | None = Header(default=None),
):
    """Re-queue every reviewable row matching the filter."""

    tenant_id = await admin_tenant(authorization, x_admin_key)
    result = await service.retry_batch(
        tenant_id,
        DeadLetterFilter(channel=req.channel, error_code=req.error_code, search=req.search),
    )
    body = RetryBatchResponse(
        attempted=result.attempted,
        enqueued=result.enqueued,
        failed=result.failed,
        failed_ids=result.failed_ids,
    )
    return JSONResponse(content=body.model_dump(by_alias=True))


@app.post("/admin/dlq/{dead_letter_id}/retry")
async def retry_dead_letter(
    dead_letter_id: str,
    authorization: str | None = Header(default=None),
    x_admin_key: str | None = Header(default=None),
):
    """Re-publish one row to the immediate tier; the row stays as history."""

    tenant_id = await admin_tenant(authorization, x_admin_key)
    row = await service.retry_one(tenant_id, dead_letter_id)
    return JSONResponse(content={"status": "RETRY_QUEUED", "id": row.id, "deadLetter": _view(row)})


@app.post("/admin/dlq/{dead_letter_id}/mark-unrecoverable")
async def mark_dead_letter_unrecoverable(
    dead_letter_id: str,
    authorization: str | None = Header(default=None),
    x_admin_key: str | None = Header(default=None),
):
    """Permanently exclude one row from retries."""

    tenant_id = await admin_tenant(authorization, x_admin_key)
    row = await service.mark_unrecoverable(tenant_id, dead_letter_id)
    return JSONResponse(content=_view(row))


@app.get("/admin/metrics")
async def admin_metrics(
    authorization: str | None = Header(default=None),
    x_admin_key: str | None = Header(default=None),
):
    """Delivery summary for the caller's tenant."""

    tenant_id = await admin_tenant(authorization, x_admin_key)
    return {"metrics": service.metrics_summary(tenant_id)}
