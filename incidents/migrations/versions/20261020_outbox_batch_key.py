"""Add batch key and per-batch uniqueness to the notification outbox.

Revision ID: 20261020_outbox_batch_key
Revises: 20261019_incidents
Create Date: 2026-10-20 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "20261020_outbox_batch_key"
down_revision = "20261019_incidents"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "notification_outbox",
        sa.Column("batch_key", sa.String(length=96), nullable=False, server_default=""),
    )
    # Rows written before this revision each count as their own batch.
    op.execute(sa.text("UPDATE notification_outbox SET batch_key = 'legacy:' || id::text"))
    op.alter_column("notification_outbox", "batch_key", server_default=None)

    op.create_index(
        "uq_notification_outbox_batch_group",
        "notification_outbox",
        ["batch_key", "user_id", "location_id", "incident_id"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_index("uq_notification_outbox_batch_group", table_name="notification_outbox")
    op.drop_column("notification_outbox", "batch_key")
