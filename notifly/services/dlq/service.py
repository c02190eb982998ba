"""Dead letter store: operator listing, manual retry and exclusion.

Rows are never deleted. A retried row moves to `REQUEUED` and stays as
history; an `UNRECOVERABLE` row is terminal and can only be re-sent as a new
submission through the gateway. The DLQ topic consumer also lands here:
messages published to the DLQ topic by operators become `RETRY_EXHAUSTED`
rows; the worker parks exhausted chains itself.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from aiokafka.errors import KafkaError
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError

from notifly.common.collaborators import AuditLogger
from notifly.common.config import settings
from notifly.common.errors import ErrorCode, InternalError, InvalidState, NotFound, NotiflyError
from notifly.common.events import KafkaBus, NotificationMessage, consume_forever
from notifly.common.logging import logger
from notifly.common.metrics import dlq_entries_total, dlq_retries_total, duplicate_events_skipped_total
from notifly.common.models import DeliveryAttempt, FailedNotification, NotificationRequest
from notifly.common.state_machine import PENDING_REVIEW, REQUEUED, UNRECOVERABLE, validate_transition
from notifly.common.topology import MAIN_TOPIC, RetryTopology


@dataclass(frozen=True)
class DeadLetterFilter:
    channel: str | None = None
    error_code: str | None = None
    is_unrecoverable: bool | None = None
    search: str | None = None
    # None lists every row still awaiting an operator (re-queued rows are history).
    status: str | None = None


@dataclass(frozen=True)
class BatchRetryResult:
    attempted: int
    enqueued: int
    failed: int
    failed_ids: list[str]


class DeadLetterService:
    """Operator actions over `failed_notifications`, always scoped to one tenant."""

    def __init__(
        self,
        session_factory,
        kafka: KafkaBus | None = None,
        audit: AuditLogger | None = None,
        topology: RetryTopology | None = None,
        service_name: str = "dlq",
    ) -> None:
        self.session_factory = session_factory
        self.kafka = kafka or KafkaBus()
        self.audit = audit or AuditLogger()
        self.topology = topology or RetryTopology()
        self.service_name = service_name

    def _filtered(self, tenant_id: str, flt: DeadLetterFilter):
        query = select(FailedNotification).where(FailedNotification.tenant_id == tenant_id)
        if flt.channel:
            query = query.where(FailedNotification.channel.ilike(f"%{flt.channel.strip().upper()}%"))
        if flt.error_code:
            query = query.where(FailedNotification.error_code == flt.error_code.strip().upper())
        if flt.is_unrecoverable is not None:
            query = query.where(FailedNotification.is_unrecoverable.is_(flt.is_unrecoverable))
        if flt.status:
            query = query.where(FailedNotification.status == flt.status.strip().upper())
        else:
            query = query.where(FailedNotification.status != REQUEUED)
        if flt.search:
            pattern = f"%{flt.search.strip()}%"
            query = query.where(
                or_(
                    FailedNotification.request_id.ilike(pattern),
                    FailedNotification.error_message.ilike(pattern),
                    FailedNotification.channel.ilike(pattern),
                )
            )
        return query

    def list(
        self, tenant_id: str, flt: DeadLetterFilter, page: int = 0, size: int = 20
    ) -> tuple[list[FailedNotification], int]:
        """Return one page (0-based, newest first) and the total match count."""

        query = self._filtered(tenant_id, flt)
        with self.session_factory() as db:
            total = db.execute(select(func.count()).select_from(query.subquery())).scalar_one()
            rows = list(
                db.execute(
                    query.order_by(FailedNotification.created_at.desc(), FailedNotification.id)
                    .offset(page * size)
                    .limit(size)
                ).scalars()
            )
        return rows, total

    def _load(self, db, tenant_id: str, dead_letter_id: str) -> FailedNotification:
        row = db.execute(
            select(FailedNotification).where(
                FailedNotification.id == dead_letter_id,
                FailedNotification.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFound(f"DLQ entry not found: {dead_letter_id}")
        return row

    def _next_replay(self, db, request_id: str) -> int:
        """First replay generation not yet used by any attempt or dead letter of the request."""

        attempts = db.execute(
            select(func.max(DeliveryAttempt.replay)).where(DeliveryAttempt.request_id == request_id)
        ).scalar_one_or_none()
        dead = db.execute(
            select(func.max(FailedNotification.replay)).where(FailedNotification.request_id == request_id)
        ).scalar_one_or_none()
        return max(attempts or 0, dead or 0) + 1

    async def retry_one(self, tenant_id: str, dead_letter_id: str) -> FailedNotification:
        """Re-publish a dead letter to tier 0 with its attempt count preserved."""

        with self.session_factory() as db:
            row = self._load(db, tenant_id, dead_letter_id)
            if row.is_unrecoverable or row.status == UNRECOVERABLE:
                raise InvalidState(f"DLQ entry {dead_letter_id} is unrecoverable")
            try:
                validate_transition(row.status, REQUEUED)
            except ValueError as exc:
                raise InvalidState(str(exc)) from exc
            request = db.get(NotificationRequest, row.request_id)
            if request is None:
                raise NotFound(f"notification not found: {row.request_id}")

            message = NotificationMessage(
                tenant_id=tenant_id,
                request_id=request.request_id,
                event_type=request.event_type,
                user_id=request.user_id,
                payload=request.payload,
                channels=[channel for channel in row.channel.split(",") if channel],
                retry_count=row.retry_count,
                replay=self._next_replay(db, request.request_id),
                original_topic=MAIN_TOPIC,
                correlation_id=request.correlation_id,
            )
            try:
                await self.kafka.publish(MAIN_TOPIC, message)
            except KafkaError as exc:
                dlq_retries_total.labels(service=self.service_name, outcome="failed").inc()
                logger.error("dlq_retry_publish_failed id=%s error=%s", dead_letter_id, exc)
                raise InternalError("failed to publish retry") from exc

            row.status = REQUEUED
            row.manual_retry_count += 1
            row.last_retry_at = datetime.now(timezone.utc)
            if request.status != "DELIVERED":
                request.status = "RETRYING"
            db.commit()
            db.refresh(row)

        dlq_retries_total.labels(service=self.service_name, outcome="enqueued").inc()
        logger.info(
            "dlq_retry_enqueued id=%s request_id=%s replay=%s retry_count=%s",
            row.id,
            row.request_id,
            message.replay,
            row.retry_count,
        )
        await self.audit.log_event(
            tenant_id,
            "DLQ_RETRY",
            "failed_notification",
            row.id,
            {"requestId": row.request_id, "replay": message.replay, "manualRetryCount": row.manual_retry_count},
        )
        return row

    async def retry_batch(self, tenant_id: str, flt: DeadLetterFilter, limit: int = 500) -> BatchRetryResult:
        """Retry every matching reviewable row; each success is committed on its own."""

        scoped = DeadLetterFilter(
            channel=flt.channel,
            error_code=flt.error_code,
            is_unrecoverable=False,
            search=flt.search,
            status=PENDING_REVIEW,
        )
        with self.session_factory() as db:
            ids = list(
                db.execute(
                    self._filtered(tenant_id, scoped)
                    .with_only_columns(FailedNotification.id)
                    .order_by(FailedNotification.created_at)
                    .limit(limit)
                ).scalars()
            )

        failed_ids = []
        for dead_letter_id in ids:
            try:
                await self.retry_one(tenant_id, dead_letter_id)
            except (NotiflyError, SQLAlchemyError) as exc:
                logger.warning("dlq_batch_retry_failed id=%s error=%s", dead_letter_id, exc)
                failed_ids.append(dead_letter_id)
        result = BatchRetryResult(
            attempted=len(ids),
            enqueued=len(ids) - len(failed_ids),
            failed=len(failed_ids),
            failed_ids=failed_ids,
        )
        logger.info(
            "dlq_batch_retry tenant_id=%s attempted=%s enqueued=%s failed=%s",
            tenant_id,
            result.attempted,
            result.enqueued,
            result.failed,
        )
        return result

    async def mark_unrecoverable(self, tenant_id: str, dead_letter_id: str) -> FailedNotification:
        """Exclude a row from every future retry; repeating the call is a no-op."""

        with self.session_factory() as db:
            row = self._load(db, tenant_id, dead_letter_id)
            if row.status == UNRECOVERABLE:
                return row
            validate_transition(row.status, UNRECOVERABLE)
            row.status = UNRECOVERABLE
            row.is_unrecoverable = True
            db.commit()
            db.refresh(row)

        logger.info("dlq_marked_unrecoverable id=%s request_id=%s", row.id, row.request_id)
        await self.audit.log_event(
            tenant_id,
            "DLQ_MARK_UNRECOVERABLE",
            "failed_notification",
            row.id,
            {"requestId": row.request_id},
        )
        return row

    def metrics_summary(self, tenant_id: str) -> dict:
        """Per-tenant delivery counts, DLQ size and average provider latency."""

        with self.session_factory() as db:
            by_status = dict(
                db.execute(
                    select(DeliveryAttempt.status, func.count())
                    .where(DeliveryAttempt.tenant_id == tenant_id)
                    .group_by(DeliveryAttempt.status)
                ).all()
            )
            by_channel = db.execute(
                select(DeliveryAttempt.channel, DeliveryAttempt.status, func.count())
                .where(DeliveryAttempt.tenant_id == tenant_id)
                .group_by(DeliveryAttempt.channel, DeliveryAttempt.status)
            ).all()
            avg_latency = db.execute(
                select(func.avg(DeliveryAttempt.latency_ms)).where(DeliveryAttempt.tenant_id == tenant_id)
            ).scalar_one_or_none()
            dlq_count = db.execute(
                select(func.count()).select_from(FailedNotification).where(FailedNotification.tenant_id == tenant_id)
            ).scalar_one()
            pending = db.execute(
                select(func.count())
                .select_from(NotificationRequest)
                .where(
                    NotificationRequest.tenant_id == tenant_id,
                    NotificationRequest.status.in_(("ACCEPTED", "RETRYING")),
                )
            ).scalar_one()

        total = sum(by_status.values())
        sent = by_status.get("SENT", 0)
        channels: dict[str, dict[str, int]] = {
            channel.lower(): {"sent": 0, "failed": 0} for channel in settings.fallback_order
        }
        for channel, status, count in by_channel:
            stats = channels.setdefault(channel.lower(), {"sent": 0, "failed": 0})
            if status == "SENT":
                stats["sent"] += count
            elif status == "FAILED":
                stats["failed"] += count
        return {
            "totalNotifications": total,
            "successfulDeliveries": sent,
            "failedDeliveries": by_status.get("FAILED", 0),
            "pendingNotifications": pending,
            "dlqCount": dlq_count,
            "averageLatency": float(avg_latency or 0.0),
            "successRate": (sent / total * 100.0) if total else 0.0,
            "channelMetrics": channels,
        }

    async def handle_dead_letter(self, message: NotificationMessage) -> None:
        """Persist a message routed to the DLQ topic as a `RETRY_EXHAUSTED` row."""

        with self.session_factory() as db:
            request = db.get(NotificationRequest, message.request_id)
            if request is None:
                logger.error("unknown_request_skipped request_id=%s topic=%s", message.request_id, self.topology.dlq.topic)
                return
            existing = db.execute(
                select(FailedNotification.id).where(
                    FailedNotification.request_id == message.request_id,
                    FailedNotification.retry_count == message.retry_count,
                    FailedNotification.replay == message.replay,
                    FailedNotification.error_code == ErrorCode.RETRY_EXHAUSTED.value,
                )
            ).first()
            if existing is not None:
                duplicate_events_skipped_total.labels(service=self.service_name, topic=self.topology.dlq.topic).inc()
                logger.info("duplicate message skipped topic=%s request_id=%s", self.topology.dlq.topic, message.request_id)
                return
            channels = message.channels or request.channels or []
            row = FailedNotification(
                tenant_id=message.tenant_id,
                request_id=message.request_id,
                channel=",".join(channels),
                error_code=ErrorCode.RETRY_EXHAUSTED.value,
                error_message=f"Failed after {message.retry_count} attempts: retry tiers exhausted",
                error_details={"correlationId": message.correlation_id},
                retry_count=message.retry_count,
                replay=message.replay,
                is_unrecoverable=False,
                status=PENDING_REVIEW,
            )
            db.add(row)
            if request.status != "DELIVERED":
                request.status = "FAILED"
            db.commit()

        dlq_entries_total.labels(
            service=self.service_name,
            error_code=ErrorCode.RETRY_EXHAUSTED.value,
            unrecoverable="false",
        ).inc()
        logger.error(
            "notification_dead_lettered request_id=%s channel=%s error_code=%s retry_count=%s",
            message.request_id,
            row.channel,
            row.error_code,
            row.retry_count,
        )

    async def start_consumers(self) -> None:
        dlq = self.topology.dlq
        await consume_forever(dlq.topic, dlq.consumer_group, self.handle_dead_letter)
