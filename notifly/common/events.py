"""Kafka message shape + producer/consumer helpers.

Every tier topic carries the same `NotificationMessage`. Messages are keyed
by request id, so all attempts for one request land on one partition and are
handled by one consumer at a time; that partition affinity is the only
per-request mutual exclusion in the pipeline.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field, ValidationError

from notifly.common.config import settings
from notifly.common.logging import (
    correlation_id_ctx,
    event_id_ctx,
    logger,
    request_id_ctx,
    tenant_id_ctx,
)
from notifly.common.metrics import event_queue_delay_seconds


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class NotificationMessage(BaseModel):
    """Canonical message published to every delivery tier topic."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    request_id: str
    event_type: str
    user_id: str | None = None
    payload: dict[str, Any]
    channels: list[str] | None = None
    retry_count: int = 0
    replay: int = 0
    # Terminal failures held back while another fallback channel is still retrying.
    deferred_failures: list[dict[str, Any]] = Field(default_factory=list)
    original_topic: str
    timestamp: str = Field(default_factory=utcnow_iso)
    correlation_id: str

    def next_attempt(
        self, topic: str, channels: list[str], deferred_failures: list[dict[str, Any]] | None = None
    ) -> "NotificationMessage":
        """Copy for the next tier: new event id and timestamp, same chain identity."""

        return self.model_copy(
            update={
                "event_id": str(uuid4()),
                "retry_count": self.retry_count + 1,
                "channels": channels,
                "deferred_failures": list(deferred_failures or []),
                "original_topic": topic,
                "timestamp": utcnow_iso(),
            }
        )


class KafkaBus:
    """Lazy Kafka producer wrapper; publishes are keyed by request id."""

    def __init__(self) -> None:
        self._producer: AIOKafkaProducer | None = None

    async def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=settings.kafka_bootstrap_servers,
                acks="all",
                enable_idempotence=True,
            )
            await self._producer.start()
        return self._producer

    async def publish(self, topic: str, message: NotificationMessage) -> None:
        """Publish and wait for the broker acknowledgement."""

        producer = await self.producer()
        await producer.send_and_wait(
            topic,
            json.dumps(message.model_dump()).encode("utf-8"),
            key=message.request_id.encode("utf-8"),
        )

    async def close(self) -> None:
        if self._producer:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Create a configured Kafka consumer for one topic/group."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


def decode_message(raw: bytes) -> NotificationMessage:
    return NotificationMessage(**json.loads(raw.decode("utf-8")))


async def wait_until_due(message: NotificationMessage, delay_seconds: int) -> None:
    """Hold a retry-tier message until `timestamp + delay_seconds`."""

    if delay_seconds <= 0:
        return
    due = parse_timestamp(message.timestamp).timestamp() + delay_seconds
    remaining = due - datetime.now(timezone.utc).timestamp()
    if remaining > 0:
        await asyncio.sleep(remaining)


async def dispatch(topic: str, message: NotificationMessage, handler) -> None:
    """Run one handler call with the message's identifiers bound to the log context."""

    delay_seconds = max(
        0.0, (datetime.now(timezone.utc) - parse_timestamp(message.timestamp)).total_seconds()
    )
    event_queue_delay_seconds.labels(service=settings.service_name, topic=topic).observe(delay_seconds)
    tokens = (
        (correlation_id_ctx, correlation_id_ctx.set(message.correlation_id)),
        (event_id_ctx, event_id_ctx.set(message.event_id)),
        (request_id_ctx, request_id_ctx.set(message.request_id)),
        (tenant_id_ctx, tenant_id_ctx.set(message.tenant_id)),
    )
    try:
        logger.info(
            "event_received topic=%s request_id=%s retry_count=%s replay=%s",
            topic,
            message.request_id,
            message.retry_count,
            message.replay,
        )
        await handler(message)
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


async def consume_forever(topic: str, group_id: str, handler, delay_seconds: int = 0) -> None:
    """Continuously consume one tier topic and pass parsed messages to `handler`.

    Offsets are committed only for messages whose handler returned. A handler
    exception rewinds that partition to the failed offset and backs off, so
    the message is redelivered rather than skipped. Undecodable messages are
    logged and skipped.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            while True:
                results = await consumer.getmany(timeout_ms=500, max_records=50)
                commit_offsets = {}
                failed = False
                for tp, messages in results.items():
                    for msg in messages:
                        try:
                            message = decode_message(msg.value)
                        except (ValueError, ValidationError) as exc:
                            logger.error(
                                "undecodable_message topic=%s offset=%s error=%s", topic, msg.offset, exc
                            )
                            commit_offsets[tp] = msg.offset + 1
                            continue
                        await wait_until_due(message, delay_seconds)
                        try:
                            await dispatch(topic, message, handler)
                        except Exception as exc:
                            logger.error(
                                "handler_error topic=%s group=%s offset=%s error=%s",
                                topic,
                                group_id,
                                msg.offset,
                                exc,
                            )
                            consumer.seek(tp, msg.offset)
                            failed = True
                            break
                        commit_offsets[tp] = msg.offset + 1
                if commit_offsets:
                    await consumer.commit(commit_offsets)
                if failed:
                    await asyncio.sleep(1)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
            await asyncio.sleep(0)
