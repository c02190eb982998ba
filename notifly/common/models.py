"""Delivery core database models.

One database is the source of truth for requests, their outbox rows, the
append-only delivery log and the dead letter store. Tenant policy tables
(channel fallback, retry budget, rate limits, user preferences) are owned by
the admin surface and only read here.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from notifly.common.db import Base, JSONType


CHANNELS = ("EMAIL", "SMS", "PUSH", "WEBHOOK")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NotificationRequest(Base):
    """One accepted submission; only `status` changes after insert."""

    __tablename__ = "notification_requests"
    __table_args__ = (UniqueConstraint("tenant_id", "idempotency_key", name="uq_request_idempotency"),)

    request_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payload: Mapped[dict] = mapped_column(JSONType)
    payload_hash: Mapped[str] = mapped_column(String)
    channels: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String, default="ACCEPTED", index=True)
    correlation_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, server_default=func.now(), onupdate=_now
    )


class OutboxEvent(Base):
    """Pending tier-0 publish written in the same transaction as its request."""

    __tablename__ = "notification_outbox"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    aggregate_id: Mapped[str] = mapped_column(
        ForeignKey("notification_requests.request_id"), unique=True, index=True
    )
    event_payload: Mapped[dict] = mapped_column(JSONType)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, server_default=func.now())
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeliveryAttempt(Base):
    """Append-only delivery log row: one channel attempt in one tier pass."""

    __tablename__ = "delivery_attempts"
    __table_args__ = (
        UniqueConstraint("request_id", "channel", "tier_attempt", "replay", name="uq_delivery_attempt"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str] = mapped_column(ForeignKey("notification_requests.request_id"), index=True)
    channel: Mapped[str] = mapped_column(String)
    tier_attempt: Mapped[int] = mapped_column(Integer)
    replay: Mapped[int] = mapped_column(Integer, default=0)
    topic: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, index=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    correlation_id: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, server_default=func.now())


class FailedNotification(Base):
    """Dead letter store row parked for operator review."""

    __tablename__ = "failed_notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str] = mapped_column(ForeignKey("notification_requests.request_id"), index=True)
    channel: Mapped[str] = mapped_column(String)
    error_code: Mapped[str] = mapped_column(String, index=True)
    error_message: Mapped[str] = mapped_column(Text)
    error_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer)
    replay: Mapped[int] = mapped_column(Integer, default=0)
    is_unrecoverable: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    status: Mapped[str] = mapped_column(String, default="PENDING_REVIEW", index=True)
    manual_retry_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, server_default=func.now())
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_now, server_default=func.now(), onupdate=_now
    )


class EventChannelPolicy(Base):
    """Tenant/event-type channel fallback order."""

    __tablename__ = "event_channel_policies"
    __table_args__ = (UniqueConstraint("tenant_id", "event_type", name="uq_channel_policy"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    fallback_order: Mapped[list] = mapped_column(JSONType)


class UserChannelPreference(Base):
    __tablename__ = "user_channel_preferences"
    __table_args__ = (UniqueConstraint("tenant_id", "user_id", "channel", name="uq_user_channel_preference"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    channel: Mapped[str] = mapped_column(String)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)


class RetryPolicy(Base):
    """Tenant/event-type override of the retry budget."""

    __tablename__ = "retry_policies"
    __table_args__ = (UniqueConstraint("tenant_id", "event_type", name="uq_retry_policy"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    event_type: Mapped[str] = mapped_column(String)
    max_attempts: Mapped[int] = mapped_column(Integer)


class RateLimitConfig(Base):
    __tablename__ = "rate_limit_configs"

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    requests_per_minute: Mapped[int] = mapped_column(Integer)
