"""Idempotency lookups over the `(tenant_id, idempotency_key)` unique index.

The index on `notification_requests` is the store: a record lives exactly as
long as its request row. Concurrent first submissions race on that index and
the loser re-reads the winner, so no application-level lock is needed.
"""

import hashlib
import json
from typing import Any

from sqlalchemy import select

from notifly.common.errors import IdempotentConflict, ValidationFailed
from notifly.common.logging import logger
from notifly.common.models import NotificationRequest


MAX_KEY_LENGTH = 128


def normalize_key(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_KEY_LENGTH:
        raise ValidationFailed(f"idempotencyKey exceeds {MAX_KEY_LENGTH} characters")
    return cleaned


def compute_payload_hash(event_type: str | None, payload: Any, user_id: str | None) -> str:
    # Canonical JSON so key order in the caller's body does not change the hash.
    serialized = json.dumps(
        {"eventType": event_type, "payload": payload, "userId": user_id},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class IdempotencyStore:
    """Maps `(tenant, idempotency key)` to the first request id."""

    def __init__(self, reject_payload_mismatch: bool = True) -> None:
        self.reject_payload_mismatch = reject_payload_mismatch

    def lookup(self, db, tenant_id: str, idempotency_key: str) -> NotificationRequest | None:
        return db.execute(
            select(NotificationRequest).where(
                NotificationRequest.tenant_id == tenant_id,
                NotificationRequest.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def replay(self, existing: NotificationRequest, payload_hash: str | None) -> str:
        """Return the original request id, refusing a reused key with a new payload."""

        if (
            self.reject_payload_mismatch
            and payload_hash is not None
            and existing.payload_hash != payload_hash
        ):
            logger.warning(
                "idempotency_key_reused tenant_id=%s key=%s request_id=%s",
                existing.tenant_id,
                existing.idempotency_key,
                existing.request_id,
            )
            raise IdempotentConflict("Idempotency key already used with a different payload")
        logger.info(
            "idempotent_replay tenant_id=%s key=%s request_id=%s",
            existing.tenant_id,
            existing.idempotency_key,
            existing.request_id,
        )
        return existing.request_id
