"""Initial governance schema

Revision ID: 3f2a8c61d0b4
Revises:
Create Date: 2026-10-18 09:12:41.208113

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f2a8c61d0b4'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps(*names: str) -> list[sa.Column]:
    return [
        sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())
        for name in names
    ]


def upgrade() -> None:
    """Create groups, memberships, messages, announcements and events."""

    # --- groups ---
    op.create_table(
        "groups",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        *_timestamps("created_at"),
    )

    # --- custom_roles ---
    op.create_table(
        "custom_roles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "group_id", sa.String(36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("color", sa.String(7), nullable=False, server_default="#6b7280"),
        sa.Column("position", sa.Integer, server_default="0"),
        sa.Column("permissions", postgresql.JSONB, nullable=False, server_default="{}"),
        *_timestamps("created_at"),
        sa.UniqueConstraint("group_id", "name", name="uq_custom_roles_group_name"),
    )

    # --- group_members ---
    op.create_table(
        "group_members",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "group_id", sa.String(36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="member"),
        sa.Column(
            "custom_role_id", sa.String(36),
            sa.ForeignKey("custom_roles.id", ondelete="SET NULL"), nullable=True,
        ),
        *_timestamps("joined_at"),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
    )
    op.create_index("ix_group_members_user", "group_members", ["user_id"])

    # --- group_messages + message_reactions ---
    op.create_table(
        "group_messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "group_id", sa.String(36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("sender_id", sa.String(64), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("is_pinned", sa.Boolean, server_default=sa.false()),
        sa.Column("pinned_by", sa.String(64), nullable=True),
        sa.Column("pinned_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps("created_at"),
    )
    op.create_index("ix_group_messages_group_time", "group_messages", ["group_id", "created_at"])
    op.create_index("ix_group_messages_pinned", "group_messages", ["group_id", "is_pinned"])

    op.create_table(
        "message_reactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "message_id", sa.String(36),
            sa.ForeignKey("group_messages.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("emoji", sa.String(32), nullable=False),
        *_timestamps("created_at"),
        sa.UniqueConstraint(
            "message_id", "user_id", "emoji", name="uq_message_reactions_msg_user_emoji",
        ),
    )
    op.create_index("ix_message_reactions_message", "message_reactions", ["message_id"])

    # --- announcements + receipts ---
    op.create_table(
        "announcements",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "group_id", sa.String(36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("author_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("category", sa.String(20), nullable=False, server_default="info"),
        sa.Column("is_pinned", sa.Boolean, server_default=sa.false()),
        sa.Column("is_published", sa.Boolean, server_default=sa.true()),
        sa.Column("bypass_mute", sa.Boolean, server_default=sa.false()),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cross_group_ids", postgresql.JSONB, nullable=True),
        sa.Column("read_count", sa.Integer, server_default="0"),
        sa.Column("acknowledged_count", sa.Integer, server_default="0"),
        *_timestamps("created_at", "updated_at"),
    )
    op.create_index(
        "ix_announcements_group_published", "announcements", ["group_id", "is_published"],
    )
    op.create_index("ix_announcements_due", "announcements", ["is_published", "scheduled_for"])

    op.create_table(
        "announcement_receipts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "announcement_id", sa.String(36),
            sa.ForeignKey("announcements.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "announcement_id", "user_id", name="uq_announcement_receipts_ann_user",
        ),
    )
    op.create_index("ix_announcement_receipts_user", "announcement_receipts", ["user_id"])

    # --- group_events + event_rsvps ---
    op.create_table(
        "group_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "group_id", sa.String(36),
            sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("creator_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("location", sa.String(200), nullable=True),
        sa.Column("location_url", sa.String(500), nullable=True),
        sa.Column("recurrence", sa.String(20), nullable=False, server_default="once"),
        sa.Column("recurrence_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_capacity", sa.Integer, nullable=True),
        sa.Column("reminder_24h", sa.Boolean, server_default=sa.true()),
        sa.Column("reminder_1h", sa.Boolean, server_default=sa.true()),
        sa.Column("custom_reminder_minutes", sa.Integer, nullable=True),
        sa.Column("is_cancelled", sa.Boolean, server_default=sa.false()),
        *_timestamps("created_at", "updated_at"),
        sa.CheckConstraint(
            "max_capacity IS NULL OR max_capacity > 0", name="ck_group_events_capacity",
        ),
    )
    op.create_index("ix_group_events_group_start", "group_events", ["group_id", "start_time"])

    op.create_table(
        "event_rsvps",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "event_id", sa.String(36),
            sa.ForeignKey("group_events.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        *_timestamps("created_at", "updated_at"),
        sa.UniqueConstraint("event_id", "user_id", name="uq_event_rsvps_event_user"),
    )
    op.create_index("ix_event_rsvps_event_status", "event_rsvps", ["event_id", "status"])


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table("event_rsvps")
    op.drop_table("group_events")
    op.drop_table("announcement_receipts")
    op.drop_table("announcements")
    op.drop_table("message_reactions")
    op.drop_table("group_messages")
    op.drop_table("group_members")
    op.drop_table("custom_roles")
    op.drop_table("groups")
