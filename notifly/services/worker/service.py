"""Delivery worker: channel fallback, retry scheduling and dead-lettering.

One consumer per tier topic feeds `handle_message`. A message is processed
as one pass: every channel in fallback order is attempted (stopping at the
first success unless fan-out is configured), then the pass's attempt rows,
any dead letter rows and the next-tier republish are committed together.
Attempt rows are unique per `(request_id, channel, tier_attempt, replay)`,
so a redelivered message finds its pass already recorded and is skipped.

In fallback mode a terminal failure is not dead-lettered while another
channel of the chain is still retrying; it rides along in the retry message
(`deferred_failures`) and is only parked if the chain ends without a `SENT`.
A retry that would land past the last delivery tier is classified as
exhausted in the same pass, so the log always ends in `FAILED`.
"""

import asyncio
import time
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from notifly.common.config import settings
from notifly.common.errors import ErrorCode, ProviderError
from notifly.common.events import KafkaBus, NotificationMessage, consume_forever
from notifly.common.logging import logger
from notifly.common.metrics import (
    delivery_attempts_total,
    dlq_entries_total,
    duplicate_events_skipped_total,
    provider_latency_seconds,
    retries_published_total,
)
from notifly.common.models import DeliveryAttempt, FailedNotification, NotificationRequest
from notifly.common.topology import RetryTier, RetryTopology
from notifly.common.tracing import get_tracer
from notifly.services.worker.policies import ChannelPreferences, FallbackResolver, RetryBudget
from notifly.services.worker.senders import build_senders


@dataclass
class ChannelOutcome:
    channel: str
    success: bool
    latency_ms: int
    error_code: str | None = None
    error_message: str | None = None
    error_details: dict = field(default_factory=dict)
    retryable: bool = False


class DeliveryWorker:
    """Consumes tier topics and drives each request to a resting state."""

    def __init__(
        self,
        session_factory,
        senders: dict | None = None,
        kafka: KafkaBus | None = None,
        topology: RetryTopology | None = None,
        resolver: FallbackResolver | None = None,
        preferences: ChannelPreferences | None = None,
        retry_budget: RetryBudget | None = None,
        stop_on_first_success: bool | None = None,
        provider_timeout_seconds: float | None = None,
        service_name: str = "worker",
    ) -> None:
        self.session_factory = session_factory
        self.senders = senders if senders is not None else build_senders()
        self.kafka = kafka or KafkaBus()
        self.topology = topology or RetryTopology()
        self.resolver = resolver or FallbackResolver(session_factory)
        self.preferences = preferences or ChannelPreferences(session_factory)
        self.retry_budget = retry_budget or RetryBudget(session_factory)
        self.stop_on_first_success = (
            settings.stop_on_first_success if stop_on_first_success is None else stop_on_first_success
        )
        self.provider_timeout_seconds = (
            settings.provider_timeout_seconds if provider_timeout_seconds is None else provider_timeout_seconds
        )
        self.service_name = service_name
        self._in_flight: set[tuple[str, int, int]] = set()

    def _pass_recorded(self, db, message: NotificationMessage) -> bool:
        return (
            db.execute(
                select(DeliveryAttempt.id)
                .where(
                    DeliveryAttempt.request_id == message.request_id,
                    DeliveryAttempt.tier_attempt == message.retry_count,
                    DeliveryAttempt.replay == message.replay,
                )
                .limit(1)
            ).first()
            is not None
        )

    def _record_duplicate_skip(self, topic: str) -> None:
        duplicate_events_skipped_total.labels(service=self.service_name, topic=topic).inc()

    def channels_for(self, message: NotificationMessage) -> list[str]:
        """Fallback order for the tenant, narrowed to the message's channel list."""

        resolved = self.resolver.resolve(message.tenant_id, message.event_type)
        if not message.channels:
            return resolved
        wanted = [channel.upper() for channel in message.channels]
        ordered = [channel for channel in resolved if channel in wanted]
        ordered.extend(channel for channel in wanted if channel not in ordered)
        return ordered

    async def _attempt(self, channel: str, sender, message: NotificationMessage) -> ChannelOutcome:
        """Call one provider with a bounded timeout and classify the result."""

        started = time.perf_counter()
        with get_tracer().start_as_current_span("provider.send") as span:
            span.set_attribute("notifly.channel", channel)
            span.set_attribute("notifly.request_id", message.request_id)
            try:
                await asyncio.wait_for(sender.send(message), timeout=self.provider_timeout_seconds)
                error = None
            except asyncio.TimeoutError:
                error = ProviderError(
                    "PROVIDER_TIMEOUT",
                    f"provider call exceeded {self.provider_timeout_seconds}s",
                    retryable=True,
                )
            except ProviderError as exc:
                error = exc
            except Exception as exc:
                logger.exception("provider_crashed channel=%s request_id=%s", channel, message.request_id)
                error = ProviderError(ErrorCode.DELIVERY_FAILED.value, str(exc) or type(exc).__name__, retryable=True)
        latency_ms = int((time.perf_counter() - started) * 1000)
        provider_latency_seconds.labels(service=self.service_name, channel=channel).observe(latency_ms / 1000)
        if error is None:
            return ChannelOutcome(channel=channel, success=True, latency_ms=latency_ms)
        logger.warning(
            "delivery_failed channel=%s request_id=%s retry_count=%s error_code=%s retryable=%s",
            channel,
            message.request_id,
            message.retry_count,
            error.error_code,
            error.retryable,
        )
        return ChannelOutcome(
            channel=channel,
            success=False,
            latency_ms=latency_ms,
            error_code=error.error_code,
            error_message=error.message,
            error_details=error.details,
            retryable=error.retryable,
        )

    async def handle_message(self, message: NotificationMessage, tier: RetryTier) -> None:
        """Run one delivery pass for a tier message."""

        with self.session_factory() as db:
            if db.get(NotificationRequest, message.request_id) is None:
                logger.error("unknown_request_skipped request_id=%s topic=%s", message.request_id, tier.topic)
                return
            if self._pass_recorded(db, message):
                logger.info(
                    "duplicate message skipped topic=%s request_id=%s retry_count=%s",
                    tier.topic,
                    message.request_id,
                    message.retry_count,
                )
                self._record_duplicate_skip(tier.topic)
                return

        key = (message.request_id, message.retry_count, message.replay)
        if key in self._in_flight:
            logger.info(
                "duplicate message skipped topic=%s request_id=%s retry_count=%s in_flight=true",
                tier.topic,
                message.request_id,
                message.retry_count,
            )
            self._record_duplicate_skip(tier.topic)
            return
        self._in_flight.add(key)
        try:
            await self._run_pass(message, tier)
        finally:
            self._in_flight.discard(key)

    async def _run_pass(self, message: NotificationMessage, tier: RetryTier) -> None:
        max_attempts = self.retry_budget.max_attempts(message.tenant_id, message.event_type)
        disabled = self.preferences.disabled_channels(message.tenant_id, message.user_id)
        outcomes: list[ChannelOutcome] = []
        skipped: list[tuple[str, str]] = []
        for channel in self.channels_for(message):
            if channel in disabled:
                logger.info("channel_skipped reason=%s channel=%s", ErrorCode.CHANNEL_DISABLED.value, channel)
                delivery_attempts_total.labels(service=self.service_name, channel=channel, status="SKIPPED").inc()
                skipped.append((channel, "channel disabled by user preference"))
                continue
            sender = self.senders.get(channel)
            if sender is None:
                logger.warning("channel_sender_missing channel=%s", channel)
                skipped.append((channel, "no provider registered for channel"))
                continue
            outcome = await self._attempt(channel, sender, message)
            outcomes.append(outcome)
            if outcome.success and self.stop_on_first_success:
                break

        if not outcomes:
            # Nothing deliverable: rest the request as a terminal failure instead of leaving it pending.
            logger.warning(
                "no_deliverable_channel request_id=%s reason=%s",
                message.request_id,
                ErrorCode.CHANNEL_DISABLED.value,
            )
            outcomes = [
                ChannelOutcome(
                    channel=channel,
                    success=False,
                    latency_ms=0,
                    error_code=ErrorCode.CHANNEL_DISABLED.value,
                    error_message=reason,
                )
                for channel, reason in skipped or [("NONE", "no channel resolved for event")]
            ]
        await self._finish_pass(message, tier, outcomes, max_attempts)

    async def _finish_pass(
        self,
        message: NotificationMessage,
        tier: RetryTier,
        outcomes: list[ChannelOutcome],
        max_attempts: int,
    ) -> None:
        """Persist the pass, dead-letter terminal failures and schedule the retry."""

        delivered = any(outcome.success for outcome in outcomes)
        next_tier = self.topology.tier(message.retry_count + 1, max_attempts)
        retry_channels: list[str] = []
        exhausted: list[ChannelOutcome] = []
        unrecoverable: list[ChannelOutcome] = []
        rows: list[DeliveryAttempt] = []
        for outcome in outcomes:
            if outcome.success:
                status = "SENT"
            elif delivered and self.stop_on_first_success:
                # Fallback already delivered this request; the failure is history only.
                status = "FAILED"
            elif outcome.retryable and not next_tier.is_dlq:
                status = "RETRYING"
                retry_channels.append(outcome.channel)
            else:
                status = "FAILED"
                (exhausted if outcome.retryable else unrecoverable).append(outcome)
            rows.append(
                DeliveryAttempt(
                    tenant_id=message.tenant_id,
                    request_id=message.request_id,
                    channel=outcome.channel,
                    tier_attempt=message.retry_count,
                    replay=message.replay,
                    topic=tier.topic,
                    status=status,
                    latency_ms=outcome.latency_ms,
                    error_code=outcome.error_code,
                    error_message=outcome.error_message,
                    error_details=outcome.error_details or None,
                    correlation_id=message.correlation_id,
                )
            )

        deferred: list[dict] = []
        if self.stop_on_first_success and not delivered:
            # Fallback chain: terminal failures wait until the chain rests without a success.
            unrecoverable = [self._from_deferred(item) for item in message.deferred_failures] + unrecoverable
            if retry_channels:
                deferred = [self._to_deferred(outcome) for outcome in unrecoverable]
                unrecoverable = []

        dead_letters = []
        if exhausted:
            last = exhausted[-1]
            dead_letters.append(
                self._dead_letter(
                    message,
                    exhausted,
                    error_code=ErrorCode.RETRY_EXHAUSTED.value,
                    error_message=f"Failed after {message.retry_count + 1} attempts: {last.error_message}",
                    unrecoverable=False,
                )
            )
        if unrecoverable:
            last = unrecoverable[-1]
            dead_letters.append(
                self._dead_letter(
                    message,
                    unrecoverable,
                    error_code=last.error_code or ErrorCode.DELIVERY_FAILED.value,
                    error_message=last.error_message or "permanent provider rejection",
                    unrecoverable=True,
                )
            )

        with self.session_factory() as db:
            request = db.get(NotificationRequest, message.request_id)
            db.add_all(rows)
            db.add_all(dead_letters)
            if request is not None and request.status != "DELIVERED":
                request.status = "DELIVERED" if delivered else ("RETRYING" if retry_channels else "FAILED")
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.info("duplicate pass skipped topic=%s request_id=%s", tier.topic, message.request_id)
                self._record_duplicate_skip(tier.topic)
                return
            if retry_channels:
                # Publish before commit: a failed publish rolls the pass back and the message is redelivered.
                await self.kafka.publish(
                    next_tier.topic, message.next_attempt(next_tier.topic, retry_channels, deferred)
                )
                retries_published_total.labels(service=self.service_name, topic=next_tier.topic).inc()
                logger.info(
                    "retry_scheduled request_id=%s channels=%s next_topic=%s retry_count=%s deferred=%s",
                    message.request_id,
                    ",".join(retry_channels),
                    next_tier.topic,
                    message.retry_count + 1,
                    len(deferred),
                )
            db.commit()

        for row in rows:
            delivery_attempts_total.labels(service=self.service_name, channel=row.channel, status=row.status).inc()
        for dead in dead_letters:
            dlq_entries_total.labels(
                service=self.service_name,
                error_code=dead.error_code,
                unrecoverable=str(dead.is_unrecoverable).lower(),
            ).inc()
            logger.error(
                "notification_dead_lettered request_id=%s channel=%s error_code=%s retry_count=%s",
                message.request_id,
                dead.channel,
                dead.error_code,
                dead.retry_count,
            )

    @staticmethod
    def _to_deferred(outcome: ChannelOutcome) -> dict:
        return {
            "channel": outcome.channel,
            "errorCode": outcome.error_code,
            "message": outcome.error_message,
            "details": outcome.error_details,
        }

    @staticmethod
    def _from_deferred(item: dict) -> ChannelOutcome:
        return ChannelOutcome(
            channel=item["channel"],
            success=False,
            latency_ms=0,
            error_code=item.get("errorCode"),
            error_message=item.get("message"),
            error_details=item.get("details") or {},
        )

    def _dead_letter(
        self,
        message: NotificationMessage,
        outcomes: list[ChannelOutcome],
        error_code: str,
        error_message: str,
        unrecoverable: bool,
    ) -> FailedNotification:
        return FailedNotification(
            tenant_id=message.tenant_id,
            request_id=message.request_id,
            channel=",".join(outcome.channel for outcome in outcomes),
            error_code=error_code,
            error_message=error_message,
            error_details={
                "attempts": [
                    {"channel": outcome.channel, "errorCode": outcome.error_code, "message": outcome.error_message}
                    for outcome in outcomes
                ],
                "correlationId": message.correlation_id,
            },
            retry_count=message.retry_count + 1,
            replay=message.replay,
            is_unrecoverable=unrecoverable,
            status="PENDING_REVIEW",
        )

    def handler_for(self, tier: RetryTier):
        async def handle(message: NotificationMessage) -> None:
            await self.handle_message(message, tier)

        return handle

    async def start_consumers(self) -> None:
        """Start one consumer per delivery tier; delay tiers hold messages until due."""

        await asyncio.gather(
            *(
                consume_forever(tier.topic, tier.consumer_group, self.handler_for(tier), tier.delay_seconds)
                for tier in self.topology.delivery_tiers
            )
        )
