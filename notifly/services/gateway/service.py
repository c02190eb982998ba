"""Ingestion gateway logic.

Admission runs in a fixed order: credential, rate limit, idempotency,
validation. Only after every check passes does the outbox writer insert the
request and its tier-0 outbox row in one transaction, and only after that
commit is `ACCEPTED` returned. Publishing is attempted right away; the relay
loop covers anything that publish misses.
"""

import asyncio
from dataclasses import dataclass
from uuid import uuid4

import redis
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from notifly.common.config import settings
from notifly.common.errors import IdempotentConflict, InternalError, NotFound, RateLimitExceeded, ValidationFailed
from notifly.common.events import KafkaBus, NotificationMessage
from notifly.common.logging import logger
from notifly.common.metrics import outbox_publish_failures_total, submissions_total
from notifly.common.models import CHANNELS, DeliveryAttempt, NotificationRequest, OutboxEvent
from notifly.common.outbox import (
    claim_pending_outbox,
    mark_outbox_sent,
    record_outbox_failure,
    update_outbox_backlog_metrics,
)
from notifly.common.topology import MAIN_TOPIC
from notifly.services.gateway.idempotency import IdempotencyStore, compute_payload_hash, normalize_key
from notifly.services.gateway.rate_limit import RateLimiter


@dataclass(frozen=True)
class SubmitResult:
    request_id: str
    correlation_id: str
    status: str = "ACCEPTED"
    duplicate: bool = False


class OutboxWriter:
    """Persist a request and its pending tier-0 event atomically."""

    def persist(
        self,
        db,
        tenant_id: str,
        request_id: str,
        event_type: str,
        payload: dict,
        payload_hash: str,
        correlation_id: str,
        idempotency_key: str | None = None,
        user_id: str | None = None,
        channels: list[str] | None = None,
    ) -> NotificationRequest:
        """Stage both rows and commit; either both exist afterwards or neither does."""

        request = NotificationRequest(
            request_id=request_id,
            tenant_id=tenant_id,
            idempotency_key=idempotency_key,
            event_type=event_type,
            user_id=user_id,
            payload=payload,
            payload_hash=payload_hash,
            channels=channels,
            status="ACCEPTED",
            correlation_id=correlation_id,
        )
        db.add(request)
        db.flush()
        message = NotificationMessage(
            tenant_id=tenant_id,
            request_id=request_id,
            event_type=event_type,
            user_id=user_id,
            payload=payload,
            channels=channels,
            retry_count=0,
            original_topic=MAIN_TOPIC,
            correlation_id=correlation_id,
        )
        db.add(
            OutboxEvent(
                tenant_id=tenant_id,
                aggregate_id=request_id,
                event_payload=message.model_dump(),
                status="PENDING",
                retry_count=0,
            )
        )
        db.commit()
        return request


def summarize_status(request: NotificationRequest, logs: list[DeliveryAttempt]) -> str:
    """Caller-facing status derived from the delivery log."""

    if not logs:
        return "PENDING"
    if any(log.status == "SENT" for log in logs):
        return "DELIVERED"
    latest_pass = max((log.replay, log.tier_attempt) for log in logs)
    latest = [log for log in logs if (log.replay, log.tier_attempt) == latest_pass]
    if any(log.status == "RETRYING" for log in latest):
        return "RETRYING"
    return "FAILED"


class IngestionService:
    """Owns submission admission, the outbox write and outbox publishing."""

    def __init__(
        self,
        session_factory,
        rate_limiter: RateLimiter,
        credential_verifier,
        kafka: KafkaBus | None = None,
        idempotency: IdempotencyStore | None = None,
        service_name: str = "gateway",
    ) -> None:
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.credential_verifier = credential_verifier
        self.kafka = kafka or KafkaBus()
        self.idempotency = idempotency or IdempotencyStore()
        self.outbox_writer = OutboxWriter()
        self.service_name = service_name

    def _record(self, outcome: str) -> None:
        submissions_total.labels(service=self.service_name, outcome=outcome).inc()

    def submit(
        self,
        tenant_id: str,
        event_type: str | None,
        payload: dict | None,
        correlation_id: str,
        user_id: str | None = None,
        idempotency_key: str | None = None,
        channels: list[str] | None = None,
    ) -> SubmitResult:
        """Admit one submission for an already authenticated tenant.

        Raises `RateLimitExceeded`, `IdempotentConflict`, `ValidationFailed`
        or `InternalError`; none of them leaves a row behind.
        """

        try:
            self.rate_limiter.check(tenant_id)
        except RateLimitExceeded:
            self._record("rate_limited")
            raise
        except redis.RedisError as exc:
            logger.error("rate_limiter_unavailable tenant_id=%s error=%s", tenant_id, exc)
            self._record("error")
            raise InternalError("rate limiter unavailable") from exc

        idempotency_key = normalize_key(idempotency_key)
        payload_hash = compute_payload_hash(event_type, payload, user_id)
        if idempotency_key is not None:
            with self.session_factory() as db:
                existing = self.idempotency.lookup(db, tenant_id, idempotency_key)
            if existing is not None:
                try:
                    request_id = self.idempotency.replay(existing, payload_hash)
                except IdempotentConflict:
                    self._record("conflict")
                    raise
                self._record("duplicate")
                return SubmitResult(request_id=request_id, correlation_id=correlation_id, duplicate=True)

        event_type, payload, channels = self._validate(event_type, payload, channels)

        request_id = str(uuid4())
        try:
            with self.session_factory() as db:
                self.outbox_writer.persist(
                    db,
                    tenant_id=tenant_id,
                    request_id=request_id,
                    event_type=event_type,
                    payload=payload,
                    payload_hash=payload_hash,
                    correlation_id=correlation_id,
                    idempotency_key=idempotency_key,
                    user_id=user_id,
                    channels=channels,
                )
        except IntegrityError as exc:
            if idempotency_key is None:
                logger.exception("outbox_write_failed request_id=%s", request_id)
                self._record("error")
                raise InternalError("failed to persist notification") from exc
            # Lost the insert race on (tenant_id, idempotency_key): return the winner.
            with self.session_factory() as db:
                existing = self.idempotency.lookup(db, tenant_id, idempotency_key)
            if existing is None:
                self._record("error")
                raise InternalError("failed to persist notification") from exc
            self._record("duplicate")
            return SubmitResult(
                request_id=self.idempotency.replay(existing, payload_hash),
                correlation_id=correlation_id,
                duplicate=True,
            )
        except SQLAlchemyError as exc:
            logger.exception("outbox_write_failed request_id=%s", request_id)
            self._record("error")
            raise InternalError("failed to persist notification") from exc

        self._record("accepted")
        logger.info(
            "notification_accepted request_id=%s tenant_id=%s event_type=%s",
            request_id,
            tenant_id,
            event_type,
        )
        return SubmitResult(request_id=request_id, correlation_id=correlation_id)

    def _validate(self, event_type, payload, channels) -> tuple[str, dict, list[str] | None]:
        if not isinstance(event_type, str) or not event_type.strip():
            self._record("invalid")
            raise ValidationFailed("eventType is required")
        if not isinstance(payload, dict) or not payload:
            self._record("invalid")
            raise ValidationFailed("payload is required")
        if channels is not None:
            channels = [channel.strip().upper() for channel in channels if channel and channel.strip()]
            if not channels:
                self._record("invalid")
                raise ValidationFailed("channels must not be empty when provided")
            unknown = [channel for channel in channels if channel not in CHANNELS]
            if unknown:
                self._record("invalid")
                raise ValidationFailed(f"unsupported channels: {','.join(unknown)}")
        return event_type.strip(), payload, channels

    async def publish_pending(self, request_id: str) -> bool:
        """Publish one request's outbox row now; the relay retries on failure."""

        with self.session_factory() as db:
            row = db.execute(
                select(OutboxEvent).where(OutboxEvent.aggregate_id == request_id, OutboxEvent.status == "PENDING")
            ).scalar_one_or_none()
            if row is None:
                return False
            sent = await self._publish_row(db, row)
            db.commit()
            return sent

    async def _publish_row(self, db, row: OutboxEvent) -> bool:
        """Publish one row and stage its new state; the caller commits."""

        message = NotificationMessage(**row.event_payload)
        try:
            await self.kafka.publish(message.original_topic, message)
        except Exception as exc:
            logger.warning(
                "outbox_publish_failed request_id=%s retry_count=%s error=%s",
                row.aggregate_id,
                row.retry_count,
                exc,
            )
            outbox_publish_failures_total.labels(service=self.service_name).inc()
            record_outbox_failure(db, row.id, str(exc))
            return False
        return mark_outbox_sent(db, row.id)

    async def relay_once(self, grace_seconds: int | None = None) -> int:
        """Republish stale `PENDING` rows; returns how many were sent."""

        grace = settings.outbox_relay_grace_seconds if grace_seconds is None else grace_seconds
        sent = 0
        with self.session_factory() as db:
            rows = claim_pending_outbox(db, limit=settings.outbox_batch_size, grace_seconds=grace)
            for row in rows:
                if await self._publish_row(db, row):
                    sent += 1
            update_outbox_backlog_metrics(db, self.service_name)
            db.commit()
        if rows:
            logger.info("outbox_relay_batch claimed=%s sent=%s", len(rows), sent)
        return sent

    async def outbox_publisher(self) -> None:
        """Continuously relay outbox rows the immediate publish missed."""

        while True:
            try:
                await self.relay_once()
            except SQLAlchemyError as exc:
                logger.error("outbox_relay_error error=%s", exc)
            await asyncio.sleep(settings.outbox_poll_interval_seconds)

    def get_status(self, tenant_id: str, request_id: str) -> tuple[NotificationRequest, str, list[DeliveryAttempt]]:
        """Return the request, its derived status and its ordered delivery log."""

        with self.session_factory() as db:
            request = db.execute(
                select(NotificationRequest).where(
                    NotificationRequest.request_id == request_id,
                    NotificationRequest.tenant_id == tenant_id,
                )
            ).scalar_one_or_none()
            if request is None:
                raise NotFound("notification not found")
            logs = list(
                db.execute(
                    select(DeliveryAttempt)
                    .where(DeliveryAttempt.request_id == request_id)
                    .order_by(DeliveryAttempt.replay, DeliveryAttempt.tier_attempt, DeliveryAttempt.created_at)
                ).scalars()
            )
        return request, summarize_status(request, logs), logs
