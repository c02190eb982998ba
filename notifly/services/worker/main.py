"""Delivery worker lifecycle and lightweight probe endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from notifly.common.config import settings
from notifly.common.db import SessionLocal
from notifly.common.logging import configure_logging
from notifly.common.metrics import metrics_response
from notifly.common.startup import log_startup_config
from notifly.common.tracing import instrument_app, setup_tracing
from notifly.services.worker.service import DeliveryWorker

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "KAFKA_BOOTSTRAP_SERVERS",
        "MAX_ATTEMPTS",
        "RETRY_TIER_DELAYS",
        "STOP_ON_FIRST_SUCCESS",
        "DEFAULT_FALLBACK_ORDER",
        "PROVIDER_TIMEOUT_SECONDS",
    ],
)
worker = DeliveryWorker(SessionLocal)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run one consumer loop per delivery tier with the application lifecycle."""

    consumer_task = asyncio.create_task(worker.start_consumers())
    yield
    consumer_task.cancel()
    await worker.kafka.close()


app = FastAPI(title="Notifly Delivery Worker", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
