"""initial incident schema

Revision ID: 20261019_incidents
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


class Geometry(sa.types.UserDefinedType):
    """Minimal PostGIS geometry type helper for migrations."""

    def __init__(self, geometry_type: str, srid: int) -> None:
        self.geometry_type = geometry_type
        self.srid = srid

    def get_col_spec(self, **kw: object) -> str:  # pragma: no cover - simple string format
        return f"geometry({self.geometry_type}, {self.srid})"


# revision identifiers, used by Alembic.
revision: str = '20261019_incidents'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.execute("CREATE EXTENSION IF NOT EXISTS postgis;")

    op.create_table(
        "fire_incidents",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("min_latitude", sa.Float(), nullable=False),
        sa.Column("max_latitude", sa.Float(), nullable=False),
        sa.Column("min_longitude", sa.Float(), nullable=False),
        sa.Column("max_longitude", sa.Float(), nullable=False),
        sa.Column("center_latitude", sa.Float(), nullable=False),
        sa.Column("center_longitude", sa.Float(), nullable=False),
        sa.Column("fire_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("first_detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("min_frp", sa.Float(), nullable=False, server_default="0"),
        sa.Column("max_frp", sa.Float(), nullable=False, server_default="0"),
        sa.Column("total_frp", sa.Float(), nullable=False, server_default="0"),
        sa.Column("avg_frp", sa.Float(), nullable=False, server_default="0"),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_notified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint(
            "status IN ('active', 'ended')",
            name="ck_fire_incidents_status",
        ),
        sa.CheckConstraint(
            "status = 'active' OR ended_at IS NOT NULL",
            name="ck_fire_incidents_ended_at",
        ),
    )
    op.create_index(
        "ix_fire_incidents_status_last_detected",
        "fire_incidents",
        ["status", "last_detected_at"],
    )
    op.create_index(
        "ix_fire_incidents_status_ended_at",
        "fire_incidents",
        ["status", "ended_at"],
    )

    op.create_table(
        "fire_detections",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("identity_key", sa.String(length=128), nullable=False),
        sa.Column("geom", Geometry("POINT", 4326), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column("satellite", sa.String(length=32), nullable=True),
        sa.Column("instrument", sa.String(length=32), nullable=True),
        sa.Column("version", sa.String(length=32), nullable=True),
        sa.Column("confidence", sa.String(length=16), nullable=True),
        sa.Column("daynight", sa.String(length=1), nullable=True),
        sa.Column("frp", sa.Float(), nullable=False, server_default="0"),
        sa.Column("bright_ti4", sa.Float(), nullable=True),
        sa.Column("bright_ti5", sa.Float(), nullable=True),
        sa.Column("scan", sa.Float(), nullable=True),
        sa.Column("track", sa.Float(), nullable=True),
        sa.Column("incident_id", sa.BigInteger(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.ForeignKeyConstraint(
            ["incident_id"],
            ["fire_incidents.id"],
            name="fk_fire_detections_incident_id",
            ondelete="CASCADE",
        ),
        sa.UniqueConstraint("identity_key", name="uq_fire_detections_identity_key"),
        sa.CheckConstraint(
            "latitude BETWEEN -90 AND 90",
            name="ck_fire_detections_lat_bounds",
        ),
        sa.CheckConstraint(
            "longitude BETWEEN -180 AND 180",
            name="ck_fire_detections_lon_bounds",
        ),
        sa.CheckConstraint("frp >= 0", name="ck_fire_detections_frp_non_negative"),
    )
    op.create_index(
        "ix_fire_detections_geom",
        "fire_detections",
        ["geom"],
        postgresql_using="gist",
    )
    op.create_index(
        "ix_fire_detections_incident_id",
        "fire_detections",
        ["incident_id"],
    )
    op.create_index(
        "ix_fire_detections_unassigned",
        "fire_detections",
        ["detected_at", "id"],
        postgresql_where=sa.text("incident_id IS NULL"),
    )

    op.create_table(
        "notification_outbox",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("location_id", sa.BigInteger(), nullable=False),
        # No FK: incidents may be purged while outbox rows are still retained.
        sa.Column("incident_id", sa.BigInteger(), nullable=False),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("new_detection_count", sa.Integer(), nullable=False),
        sa.Column("incident_detection_count", sa.Integer(), nullable=False),
        sa.Column("other_active_incident_count", sa.Integer(), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
        ),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "kind IN ('new_incident', 'incident_update', 'incident_ended')",
            name="ck_notification_outbox_kind",
        ),
    )
    op.create_index(
        "ix_notification_outbox_status_created",
        "notification_outbox",
        ["status", "created_at"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_notification_outbox_status_created", table_name="notification_outbox")
    op.drop_table("notification_outbox")
    op.drop_index("ix_fire_detections_unassigned", table_name="fire_detections")
    op.drop_index("ix_fire_detections_incident_id", table_name="fire_detections")
    op.drop_index("ix_fire_detections_geom", table_name="fire_detections")
    op.drop_table("fire_detections")
    op.drop_index("ix_fire_incidents_status_ended_at", table_name="fire_incidents")
    op.drop_index("ix_fire_incidents_status_last_detected", table_name="fire_incidents")
    op.drop_table("fire_incidents")
