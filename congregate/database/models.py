"""
congregate.database.models — SQLAlchemy 2.0 Data Models
========================================================

Schema of the shared relational store.

Tables:
- groups                 — Community groups (scope for everything else)
- custom_roles           — Group-scoped full permission overrides
- group_members          — Membership: (group, user, role, custom role)
- group_messages         — Chat messages; carries the pin marker
- message_reactions      — One row per (message, user, emoji)
- announcements          — Broadcasts with schedule + receipt counters
- announcement_receipts  — Read / acknowledged timestamps per (announcement, user)
- group_events           — Events with optional capacity + recurrence metadata
- event_rsvps            — One RSVP per (event, user), last write wins

User ids come from the hosted identity provider and are stored as opaque
strings; there is no local ``users`` table.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Congregate ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class AnnouncementCategory(enum.StrEnum):
    """Closed set of announcement categories, most urgent first."""
    URGENT = "urgent"
    INFO = "info"
    REMINDER = "reminder"
    CELEBRATION = "celebration"


class EventRecurrence(enum.StrEnum):
    """Descriptive recurrence; each stored row is a single occurrence."""
    ONCE = "once"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class RSVPStatus(enum.StrEnum):
    GOING = "going"
    MAYBE = "maybe"
    NOT_GOING = "not_going"


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------
class Group(Base):
    __tablename__ = "groups"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    members: Mapped[list[GroupMember]] = relationship(
        back_populates="group", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Group id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# CustomRole — full permission override scoped to one group
# ---------------------------------------------------------------------------
class CustomRoleRow(Base):
    """A group's named permission set.

    ``permissions`` stores every :class:`RolePermissions` flag; when a member
    has a custom role these flags replace the base role's defaults.
    """
    __tablename__ = "custom_roles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6b7280")
    position: Mapped[int] = mapped_column(Integer, default=0)
    permissions: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("group_id", "name", name="uq_custom_roles_group_name"),
    )

    def __repr__(self) -> str:
        return f"<CustomRole id={self.id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# GroupMember — membership row
# ---------------------------------------------------------------------------
class GroupMember(Base):
    __tablename__ = "group_members"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Stored as text; may hold legacy values such as "leader"
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="member")
    custom_role_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("custom_roles.id", ondelete="SET NULL"), nullable=True
    )
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    group: Mapped[Group] = relationship(back_populates="members")
    custom_role: Mapped[CustomRoleRow | None] = relationship()

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_members_group_user"),
        Index("ix_group_members_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<GroupMember group={self.group_id} user={self.user_id} role={self.role!r}>"


# ---------------------------------------------------------------------------
# GroupMessage — chat message with pin marker
# ---------------------------------------------------------------------------
class GroupMessage(Base):
    __tablename__ = "group_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    pinned_by: Mapped[str | None] = mapped_column(String(64), default=None)
    pinned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    reactions: Mapped[list[MessageReaction]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_group_messages_group_time", "group_id", "created_at"),
        Index("ix_group_messages_pinned", "group_id", "is_pinned"),
    )

    def __repr__(self) -> str:
        return f"<GroupMessage id={self.id} group={self.group_id} pinned={self.is_pinned}>"


# ---------------------------------------------------------------------------
# MessageReaction — unique (message, user, emoji)
# ---------------------------------------------------------------------------
class MessageReaction(Base):
    __tablename__ = "message_reactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    message_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("group_messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    message: Mapped[GroupMessage] = relationship(back_populates="reactions")

    __table_args__ = (
        UniqueConstraint(
            "message_id", "user_id", "emoji", name="uq_message_reactions_msg_user_emoji",
        ),
        Index("ix_message_reactions_message", "message_id"),
    )

    def __repr__(self) -> str:
        return f"<MessageReaction msg={self.message_id} user={self.user_id} {self.emoji}>"


# ---------------------------------------------------------------------------
# Announcement — scheduled / published broadcast
# ---------------------------------------------------------------------------
class Announcement(Base):
    """A group broadcast.

    ``is_published=False`` with a future ``scheduled_for`` is the scheduled
    state.  ``read_count`` / ``acknowledged_count`` only move when a receipt
    timestamp is set for the first time.  ``updated_at`` is stamped by the
    writer (receipts do not touch it).
    """
    __tablename__ = "announcements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    author_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(20), nullable=False, default=AnnouncementCategory.INFO.value
    )
    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True)
    bypass_mute: Mapped[bool] = mapped_column(Boolean, default=False)
    scheduled_for: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    cross_group_ids: Mapped[list | None] = mapped_column(JSONB, default=None)
    read_count: Mapped[int] = mapped_column(Integer, default=0)
    acknowledged_count: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    receipts: Mapped[list[AnnouncementReceipt]] = relationship(
        back_populates="announcement", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_announcements_group_published", "group_id", "is_published"),
        Index("ix_announcements_due", "is_published", "scheduled_for"),
    )

    def __repr__(self) -> str:
        return (
            f"<Announcement id={self.id} group={self.group_id} "
            f"published={self.is_published}>"
        )


class AnnouncementReceipt(Base):
    """Read receipt and (optional) acknowledgment for one user."""
    __tablename__ = "announcement_receipts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    announcement_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("announcements.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    announcement: Mapped[Announcement] = relationship(back_populates="receipts")

    __table_args__ = (
        UniqueConstraint(
            "announcement_id", "user_id", name="uq_announcement_receipts_ann_user",
        ),
        Index("ix_announcement_receipts_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<AnnouncementReceipt ann={self.announcement_id} user={self.user_id}>"


# ---------------------------------------------------------------------------
# GroupEvent + EventRSVP
# ---------------------------------------------------------------------------
class GroupEvent(Base):
    __tablename__ = "group_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    group_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, default=None)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    location: Mapped[str | None] = mapped_column(String(200), default=None)
    location_url: Mapped[str | None] = mapped_column(String(500), default=None)
    recurrence: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EventRecurrence.ONCE.value
    )
    recurrence_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    max_capacity: Mapped[int | None] = mapped_column(Integer, default=None)
    reminder_24h: Mapped[bool] = mapped_column(Boolean, default=True)
    reminder_1h: Mapped[bool] = mapped_column(Boolean, default=True)
    custom_reminder_minutes: Mapped[int | None] = mapped_column(Integer, default=None)
    is_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    rsvps: Mapped[list[EventRSVP]] = relationship(
        back_populates="event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_group_events_group_start", "group_id", "start_time"),
        CheckConstraint(
            "max_capacity IS NULL OR max_capacity > 0", name="ck_group_events_capacity",
        ),
    )

    def __repr__(self) -> str:
        return f"<GroupEvent id={self.id} title={self.title!r} cancelled={self.is_cancelled}>"


class EventRSVP(Base):
    __tablename__ = "event_rsvps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    event_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("group_events.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    event: Mapped[GroupEvent] = relationship(back_populates="rsvps")

    __table_args__ = (
        UniqueConstraint("event_id", "user_id", name="uq_event_rsvps_event_user"),
        Index("ix_event_rsvps_event_status", "event_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<EventRSVP event={self.event_id} user={self.user_id} {self.status}>"
