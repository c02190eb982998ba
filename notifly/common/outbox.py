"""Helpers for the transactional notification outbox.

The gateway publishes each outbox row right after its commit; the relay only
picks up rows that stayed `PENDING` past a grace period, which means the
immediate publish failed or the process died before marking the row.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select, update

from notifly.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total
from notifly.common.models import OutboxEvent


def claim_pending_outbox(db, limit: int = 100, grace_seconds: int = 5) -> list[OutboxEvent]:
    """Lock a batch of stale `PENDING` rows for this relay's transaction."""

    stale_before = datetime.now(timezone.utc) - timedelta(seconds=grace_seconds)
    return list(
        db.execute(
            select(OutboxEvent)
            .where(OutboxEvent.status == "PENDING", OutboxEvent.created_at <= stale_before)
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        ).scalars()
    )


def mark_outbox_sent(db, outbox_id: str) -> bool:
    """Flip one row to `SENT`; returns False when another publisher already did."""

    result = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == outbox_id, OutboxEvent.status == "PENDING")
        .values(status="SENT", sent_at=datetime.now(timezone.utc), last_error=None)
    )
    return result.rowcount == 1


def record_outbox_failure(db, outbox_id: str, error: str) -> None:
    """Keep the row `PENDING` and count the failed publish."""

    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == outbox_id, OutboxEvent.status == "PENDING")
        .values(retry_count=OutboxEvent.retry_count + 1, last_error=error[:1000])
    )


def update_outbox_backlog_metrics(db, service_name: str) -> None:
    """Update service-level gauges for pending outbox depth and oldest age."""

    now = datetime.now(timezone.utc)
    pending_count = db.execute(
        select(func.count()).select_from(OutboxEvent).where(OutboxEvent.status == "PENDING")
    ).scalar_one()
    oldest_pending = db.execute(
        select(func.min(OutboxEvent.created_at)).where(OutboxEvent.status == "PENDING")
    ).scalar_one()
    age_seconds = 0.0
    if oldest_pending is not None:
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=timezone.utc)
        age_seconds = max(0.0, (now - oldest_pending).total_seconds())
    outbox_pending_total.labels(service=service_name).set(float(pending_count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age_seconds)
