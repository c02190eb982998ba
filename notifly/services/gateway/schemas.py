"""API request/response schemas for the ingestion gateway."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SubmitNotificationRequest(BaseModel):
    """Body of `POST /notifications`.

    `eventType` and `payload` are checked by the service rather than here so
    credential, rate-limit and idempotency checks run first.
    """

    model_config = ConfigDict(populate_by_name=True)

    event_type: str | None = Field(default=None, alias="eventType")
    payload: dict[str, Any] | None = None
    user_id: str | None = Field(default=None, alias="userId")
    idempotency_key: str | None = Field(default=None, alias="idempotencyKey")
    channels: list[str] | None = None


class SubmitNotificationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(serialization_alias="requestId")
    status: str = "ACCEPTED"
    correlation_id: str = Field(serialization_alias="correlationId")


class NotificationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str = Field(serialization_alias="requestId")
    tenant_id: str = Field(serialization_alias="tenantId")
    event_type: str = Field(serialization_alias="eventType")
    user_id: str | None = Field(serialization_alias="userId")
    idempotency_key: str | None = Field(serialization_alias="idempotencyKey")
    payload: dict[str, Any]
    payload_hash: str = Field(serialization_alias="payloadHash")
    status: str
    correlation_id: str = Field(serialization_alias="correlationId")
    created_at: datetime | None = Field(serialization_alias="createdAt")


class DeliveryAttemptView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: str = Field(serialization_alias="requestId")
    channel: str
    tier_attempt: int = Field(serialization_alias="tierAttempt")
    replay: int
    topic: str
    status: str
    latency_ms: int | None = Field(serialization_alias="latencyMs")
    error_code: str | None = Field(serialization_alias="errorCode")
    error_message: str | None = Field(serialization_alias="errorMessage")
    error_details: dict[str, Any] | None = Field(serialization_alias="errorDetails")
    created_at: datetime | None = Field(serialization_alias="timestamp")


class NotificationStatusResponse(BaseModel):
    notification: NotificationView
    status: str
    logs: list[DeliveryAttemptView]
