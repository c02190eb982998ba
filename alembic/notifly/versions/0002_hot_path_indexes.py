"""add relay and attempt-lookup hot-path indexes

Revision ID: 0002_hot_path_indexes
Revises: 0001_notifly
Create Date: 2026-10-19
"""

from alembic import op


revision = "0002_hot_path_indexes"
down_revision = "0001_notifly"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_notification_outbox_status_created_at",
        "notification_outbox",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_delivery_attempts_pass",
        "delivery_attempts",
        ["request_id", "tier_attempt", "replay"],
    )
    op.create_index(
        "ix_failed_notifications_tenant_status_created_at",
        "failed_notifications",
        ["tenant_id", "status", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_failed_notifications_tenant_status_created_at", table_name="failed_notifications")
    op.drop_index("ix_delivery_attempts_pass", table_name="delivery_attempts")
    op.drop_index("ix_notification_outbox_status_created_at", table_name="notification_outbox")
