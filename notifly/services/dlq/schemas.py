"""API schemas for the dead letter admin surface."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class DeadLetterView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    request_id: str = Field(serialization_alias="requestId")
    channel: str
    error_code: str = Field(serialization_alias="errorCode")
    error_message: str = Field(serialization_alias="errorMessage")
    error_details: dict[str, Any] | None = Field(serialization_alias="errorDetails")
    retry_count: int = Field(serialization_alias="retryCount")
    is_unrecoverable: bool = Field(serialization_alias="isUnrecoverable")
    status: str
    manual_retry_count: int = Field(serialization_alias="manualRetryCount")
    created_at: datetime | None = Field(serialization_alias="createdAt")
    last_retry_at: datetime | None = Field(serialization_alias="lastRetryAt")


class DeadLetterPage(BaseModel):
    data: list[DeadLetterView]
    total: int
    page: int
    size: int
    total_pages: int = Field(serialization_alias="totalPages")


class RetryBatchRequest(BaseModel):
    """Filter for `POST /admin/dlq/retry-batch`; unrecoverable rows are never matched."""

    model_config = ConfigDict(populate_by_name=True)

    channel: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")
    search: str | None = None


class RetryBatchResponse(BaseModel):
    attempted: int
    enqueued: int
    failed: int
    failed_ids: list[str] = Field(serialization_alias="failedIds")
