"""initial check-in, circle and alert escalation schema

Revision ID: 20261001_01
Revises:
Create Date: 2026-10-01 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261001_01"
down_revision = None
branch_labels = None
depends_on = None

OPEN_STATUS_SQL = "status IN ('pending', 'sent', 'acknowledged')"


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True, unique=True),
        sa.Column("phone_number", sa.String(length=20), nullable=True, unique=True),
        sa.Column("is_checker", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("last_known_latitude", sa.Float(), nullable=True),
        sa.Column("last_known_longitude", sa.Float(), nullable=True),
        sa.Column("last_known_address", sa.Text(), nullable=True),
        sa.Column("last_known_location_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "schedules",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("window_start_hour", sa.SmallInteger(), nullable=False, server_default="7"),
        sa.Column("window_start_minute", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("window_end_hour", sa.SmallInteger(), nullable=False, server_default="10"),
        sa.Column("window_end_minute", sa.SmallInteger(), nullable=False, server_default="0"),
        sa.Column("timezone_identifier", sa.String(length=50), nullable=False, server_default="UTC"),
        sa.Column("active_days", sa.JSON(), nullable=False, server_default=sa.text("'[0,1,2,3,4,5,6]'::json")),
        sa.Column("grace_period_minutes", sa.SmallInteger(), nullable=False, server_default="30"),
        sa.Column("reminder_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reminder_minutes_before", sa.SmallInteger(), nullable=False, server_default="30"),
        sa.Column("last_reminded_on", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "uq_schedules_one_active_per_user",
        "schedules",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "checkins",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("mental_score", sa.SmallInteger(), nullable=False),
        sa.Column("body_score", sa.SmallInteger(), nullable=False),
        sa.Column("mood_score", sa.SmallInteger(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("location_name", sa.String(length=255), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("selfie_url", sa.Text(), nullable=True),
        sa.Column("selfie_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_manual", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("mental_score BETWEEN 1 AND 5", name="ck_checkins_mental_score"),
        sa.CheckConstraint("body_score BETWEEN 1 AND 5", name="ck_checkins_body_score"),
        sa.CheckConstraint("mood_score BETWEEN 1 AND 5", name="ck_checkins_mood_score"),
    )
    op.create_index("ix_checkins_user_timestamp", "checkins", ["user_id", "timestamp"])

    op.create_table(
        "circle_links",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("checker_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("supporter_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=True),
        sa.Column("supporter_display_name", sa.String(length=100), nullable=True),
        sa.Column("supporter_phone", sa.String(length=20), nullable=True),
        sa.Column("supporter_email", sa.String(length=255), nullable=True),
        sa.Column("can_see_mood", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("can_see_location", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("can_see_selfie", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("can_poke", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("alert_priority", sa.SmallInteger(), nullable=False, server_default="1"),
        sa.Column("alert_via_push", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("alert_via_sms", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("alert_via_email", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("invited_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("checker_id", "supporter_id"),
    )
    op.create_index("ix_circle_links_checker_id", "circle_links", ["checker_id"])
    op.create_index("ix_circle_links_supporter_id", "circle_links", ["supporter_id"])

    op.create_table(
        "alerts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("checker_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("checker_name", sa.String(length=100), nullable=False),
        sa.Column("level", sa.String(length=20), nullable=False, server_default="reminder"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("alert_day", sa.Date(), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("missed_window_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checkin_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_known_location", sa.String(length=255), nullable=True),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("acknowledged_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("resolution", sa.String(length=50), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("notified_supporter_ids", sa.JSON(), nullable=False, server_default=sa.text("'[]'::json")),
        sa.Column("notified_level", sa.String(length=20), nullable=True),
        sa.Column("dispatch_claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "level IN ('reminder', 'soft', 'hard', 'escalation')", name="ck_alerts_level"
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'acknowledged', 'resolved', 'cancelled')",
            name="ck_alerts_status",
        ),
    )
    op.create_index(
        "uq_alerts_open_per_checker_day",
        "alerts",
        ["checker_id", "alert_day"],
        unique=True,
        postgresql_where=sa.text(OPEN_STATUS_SQL),
    )
    op.create_index("ix_alerts_checker_status", "alerts", ["checker_id", "status"])

    op.create_table(
        "alert_deliveries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("alert_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("level", sa.String(length=20), nullable=False),
        sa.Column("channel", sa.String(length=10), nullable=False),
        sa.Column("supporter_key", sa.String(length=64), nullable=True),
        sa.Column("recipient", sa.String(length=255), nullable=True),
        sa.Column("outcome", sa.String(length=10), nullable=False),
        sa.Column("provider_id", sa.String(length=128), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_alert_deliveries_alert_id", "alert_deliveries", ["alert_id"])

    op.create_table(
        "push_tokens",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(length=10), nullable=False),
        sa.Column("device_id", sa.String(length=100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", "token"),
    )

    op.create_table(
        "call_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("alert_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("alerts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("supporter_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("call_sid", sa.String(length=64), nullable=False, unique=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_call_logs_alert_id", "call_logs", ["alert_id"])


def downgrade() -> None:
    op.drop_index("ix_call_logs_alert_id", table_name="call_logs")
    op.drop_table("call_logs")
    op.drop_table("push_tokens")
    op.drop_index("ix_alert_deliveries_alert_id", table_name="alert_deliveries")
    op.drop_table("alert_deliveries")
    op.drop_index("ix_alerts_checker_status", table_name="alerts")
    op.drop_index("uq_alerts_open_per_checker_day", table_name="alerts")
    op.drop_table("alerts")
    op.drop_index("ix_circle_links_supporter_id", table_name="circle_links")
    op.drop_index("ix_circle_links_checker_id", table_name="circle_links")
    op.drop_table("circle_links")
    op.drop_index("ix_checkins_user_timestamp", table_name="checkins")
    op.drop_table("checkins")
    op.drop_index("uq_schedules_one_active_per_user", table_name="schedules")
    op.drop_table("schedules")
    op.drop_table("users")
