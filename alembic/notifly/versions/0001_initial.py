"""initial notifly delivery schema

Revision ID: 0001_notifly
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_notifly"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb():
    return postgresql.JSONB(astext_type=sa.Text())


def upgrade() -> None:
    op.create_table(
        "notification_requests",
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("payload", _jsonb(), nullable=False),
        sa.Column("payload_hash", sa.String(), nullable=False),
        sa.Column("channels", _jsonb(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("request_id"),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_request_idempotency"),
    )
    op.create_index("ix_notification_requests_tenant_id", "notification_requests", ["tenant_id"])
    op.create_index("ix_notification_requests_event_type", "notification_requests", ["event_type"])
    op.create_index("ix_notification_requests_status", "notification_requests", ["status"])

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column("event_payload", _jsonb(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["aggregate_id"], ["notification_requests.request_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_outbox_tenant_id", "notification_outbox", ["tenant_id"])
    op.create_index("ix_notification_outbox_aggregate_id", "notification_outbox", ["aggregate_id"], unique=True)
    op.create_index("ix_notification_outbox_status", "notification_outbox", ["status"])

    op.create_table(
        "delivery_attempts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("tier_attempt", sa.Integer(), nullable=False),
        sa.Column("replay", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("topic", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", _jsonb(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["request_id"], ["notification_requests.request_id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("request_id", "channel", "tier_attempt", "replay", name="uq_delivery_attempt"),
    )
    op.create_index("ix_delivery_attempts_tenant_id", "delivery_attempts", ["tenant_id"])
    op.create_index("ix_delivery_attempts_request_id", "delivery_attempts", ["request_id"])
    op.create_index("ix_delivery_attempts_status", "delivery_attempts", ["status"])

    op.create_table(
        "failed_notifications",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("error_code", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_details", _jsonb(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("replay", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_unrecoverable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("manual_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["request_id"], ["notification_requests.request_id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_notifications_tenant_id", "failed_notifications", ["tenant_id"])
    op.create_index("ix_failed_notifications_request_id", "failed_notifications", ["request_id"])
    op.create_index("ix_failed_notifications_error_code", "failed_notifications", ["error_code"])
    op.create_index("ix_failed_notifications_is_unrecoverable", "failed_notifications", ["is_unrecoverable"])
    op.create_index("ix_failed_notifications_status", "failed_notifications", ["status"])

    op.create_table(
        "event_channel_policies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("fallback_order", _jsonb(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "event_type", name="uq_channel_policy"),
    )
    op.create_index("ix_event_channel_policies_tenant_id", "event_channel_policies", ["tenant_id"])

    op.create_table(
        "user_channel_preferences",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("channel", sa.String(), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "user_id", "channel", name="uq_user_channel_preference"),
    )
    op.create_index("ix_user_channel_preferences_tenant_id", "user_channel_preferences", ["tenant_id"])

    op.create_table(
        "retry_policies",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "event_type", name="uq_retry_policy"),
    )
    op.create_index("ix_retry_policies_tenant_id", "retry_policies", ["tenant_id"])

    op.create_table(
        "rate_limit_configs",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("requests_per_minute", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )


def downgrade() -> None:
    op.drop_table("rate_limit_configs")
    op.drop_index("ix_retry_policies_tenant_id", table_name="retry_policies")
    op.drop_table("retry_policies")
    op.drop_index("ix_user_channel_preferences_tenant_id", table_name="user_channel_preferences")
    op.drop_table("user_channel_preferences")
    op.drop_index("ix_event_channel_policies_tenant_id", table_name="event_channel_policies")
    op.drop_table("event_channel_policies")
    for column in ("status", "is_unrecoverable", "error_code", "request_id", "tenant_id"):
        op.drop_index(f"ix_failed_notifications_{column}", table_name="failed_notifications")
    op.drop_table("failed_notifications")
    for column in ("status", "request_id", "tenant_id"):
        op.drop_index(f"ix_delivery_attempts_{column}", table_name="delivery_attempts")
    op.drop_table("delivery_attempts")
    for column in ("status", "aggregate_id", "tenant_id"):
        op.drop_index(f"ix_notification_outbox_{column}", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    for column in ("status", "event_type", "tenant_id"):
        op.drop_index(f"ix_notification_requests_{column}", table_name="notification_requests")
    op.drop_table("notification_requests")
