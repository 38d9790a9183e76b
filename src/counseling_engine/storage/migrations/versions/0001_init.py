"""
Инициальная миграция.

Создаёт таблицы:
- counselors
- clients
- meetings (+ частичный уникальный индекс живого слота)
- session_history
- counselor_clients
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_MEETING_STATUSES = (
    "request_pending",
    "counselor_assigned",
    "time_selected",
    "confirmed",
    "cancelled",
    "completed",
    "abandoned",
    "client_only",
    "counselor_only",
    "incomplete",
)
_LIVE_SLOT_WHERE = "status IN ('time_selected', 'confirmed')"


_MEETING_TYPE = sa.Enum("virtual", "physical", name="meetingtype", native_enum=False)
_MEETING_STATUS = sa.Enum(*_MEETING_STATUSES, name="meetingstatus", native_enum=False)


def upgrade() -> None:
    op.create_table(
        "counselors",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False),
        sa.Column("work_start", sa.String(length=5), nullable=True),
        sa.Column("work_end", sa.String(length=5), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
        sa.Column("unavailable_dates", sa.JSON(), nullable=False),
        sa.Column("max_daily_meetings", sa.Integer(), nullable=False),
        sa.Column("max_consecutive_meetings", sa.Integer(), nullable=False),
        sa.Column("total_sessions", sa.Integer(), nullable=False),
        sa.Column("completed_sessions", sa.Integer(), nullable=False),
        sa.Column("cancelled_sessions", sa.Integer(), nullable=False),
        sa.Column("active_clients", sa.Integer(), nullable=False),
        sa.Column("total_ratings", sa.Integer(), nullable=False),
        sa.Column("average_rating", sa.Float(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "clients",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("username", sa.String(length=128), nullable=False),
        sa.Column(
            "current_counselor_id",
            sa.String(length=64),
            sa.ForeignKey("counselors.id"),
            nullable=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "meetings",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("client_id", sa.String(length=64), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column(
            "counselor_id", sa.String(length=64), sa.ForeignKey("counselors.id"), nullable=True
        ),
        sa.Column("meeting_type", _MEETING_TYPE, nullable=False),
        sa.Column("issue_description", sa.Text(), nullable=False),
        sa.Column("meeting_date", sa.Date(), nullable=True),
        sa.Column("meeting_time", sa.String(length=5), nullable=True),
        sa.Column("meeting_duration", sa.Integer(), nullable=False),
        sa.Column("status", _MEETING_STATUS, nullable=False),
        sa.Column("auto_assigned", sa.Boolean(), nullable=False),
        sa.Column("counselor_response_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_expire_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("client_joined", sa.Boolean(), nullable=False),
        sa.Column("counselor_joined", sa.Boolean(), nullable=False),
        sa.Column("grace_active", sa.Boolean(), nullable=False),
        sa.Column("grace_end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("daily_room_name", sa.String(length=128), nullable=True),
        sa.Column("daily_room_url", sa.String(length=512), nullable=True),
        sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("no_show_reason", sa.Text(), nullable=True),
        sa.Column("no_show_reported_by", sa.String(length=16), nullable=True),
        sa.Column("admin_assigned_by", sa.String(length=64), nullable=True),
        sa.Column("admin_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "uq_meetings_live_slot",
        "meetings",
        ["counselor_id", "meeting_date", "meeting_time"],
        unique=True,
        postgresql_where=sa.text(_LIVE_SLOT_WHERE),
        sqlite_where=sa.text(_LIVE_SLOT_WHERE),
    )
    op.create_index("ix_meetings_status", "meetings", ["status"], unique=False)
    op.create_index("ix_meetings_client", "meetings", ["client_id"], unique=False)

    op.create_table(
        "session_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "meeting_id",
            sa.String(length=64),
            sa.ForeignKey("meetings.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("client_id", sa.String(length=64), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column(
            "counselor_id", sa.String(length=64), sa.ForeignKey("counselors.id"), nullable=False
        ),
        sa.Column("session_date", sa.Date(), nullable=True),
        sa.Column("session_type", _MEETING_TYPE, nullable=False),
        sa.Column("status", _MEETING_STATUS, nullable=False),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("feedback", sa.Text(), nullable=True),
        sa.Column("rated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_session_history_client_id", "session_history", ["client_id"])
    op.create_index("ix_session_history_counselor_id", "session_history", ["counselor_id"])

    op.create_table(
        "counselor_clients",
        sa.Column(
            "counselor_id",
            sa.String(length=64),
            sa.ForeignKey("counselors.id"),
            primary_key=True,
        ),
        sa.Column(
            "client_id", sa.String(length=64), sa.ForeignKey("clients.id"), primary_key=True
        ),
        sa.Column("first_session_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("counselor_clients")
    op.drop_index("ix_session_history_counselor_id", table_name="session_history")
    op.drop_index("ix_session_history_client_id", table_name="session_history")
    op.drop_table("session_history")
    op.drop_index("ix_meetings_client", table_name="meetings")
    op.drop_index("ix_meetings_status", table_name="meetings")
    op.drop_index("uq_meetings_live_slot", table_name="meetings")
    op.drop_table("meetings")
    op.drop_table("clients")
    op.drop_table("counselors")
