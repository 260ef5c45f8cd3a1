"""
congregate.services.membership_service — Groups, Members & Custom Roles
========================================================================

Joins, promotions/demotions, removals and custom-role management.  Every
mutation is authorised locally first — permission key from the actor's
effective permissions, rank from
:mod:`congregate.engine.roles` — so a denial never reaches the store.

Roles are written back as their canonical names; legacy strings already in
the table are normalised whenever a row is read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import select

from congregate.database.engine import get_session
from congregate.database.models import (
    CustomRoleRow,
    Group,
    GroupMember,
    GroupMessage,
    as_utc,
)
from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.notifications import notify_change
from congregate.engine.permissions import (
    CustomRole,
    PermissionKey,
    Role,
    RolePermissions,
    normalize_role,
    outranks,
    rank,
)
from congregate.engine.roles import can_modify_role, can_remove_member
from congregate.services.errors import (
    NotFound,
    PermissionDenied,
    ValidationError,
    call_store,
    enforce_rate,
)
from congregate.services.identity import custom_role_from_row
from congregate.services.schemas import CustomRoleCreate, parse_input

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from congregate.engine.rate_guard import RateGuard
    from congregate.services.identity import IdentityProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Membership:
    group_id: str
    user_id: str
    role: Role
    custom_role: CustomRole | None = None
    joined_at: datetime | None = None


def _membership_from_row(member: GroupMember) -> Membership:
    return Membership(
        group_id=member.group_id,
        user_id=member.user_id,
        role=normalize_role(member.role),
        custom_role=custom_role_from_row(member.custom_role) if member.custom_role else None,
        joined_at=as_utc(member.joined_at),
    )


# ---------------------------------------------------------------------------
# Store functions (sync — run via call_store)
# ---------------------------------------------------------------------------
def _get_member(session, group_id: str, user_id: str) -> GroupMember | None:
    return session.scalar(
        select(GroupMember).where(
            GroupMember.group_id == group_id, GroupMember.user_id == user_id,
        )
    )


def _create_group(engine: Engine, name: str, description: str | None, creator_id: str) -> Group:
    with get_session(engine) as session:
        group = Group(name=name, description=description)
        session.add(group)
        session.flush()
        session.refresh(group)
        session.add(GroupMember(group_id=group.id, user_id=creator_id, role=Role.PASTOR.value))
        notify_change(
            session,
            ChangeEvent(kind=ChangeKind.MEMBERSHIP, group_id=group.id, user_id=creator_id),
        )
        return group


def _add_member(engine: Engine, group_id: str, user_id: str, role: Role) -> Membership:
    with get_session(engine) as session:
        if session.get(Group, group_id) is None:
            raise NotFound("group_not_found")
        member = GroupMember(group_id=group_id, user_id=user_id, role=role.value)
        session.add(member)
        session.flush()
        notify_change(
            session,
            ChangeEvent(kind=ChangeKind.MEMBERSHIP, group_id=group_id, user_id=user_id),
        )
        return _membership_from_row(member)


def _load_member_role(engine: Engine, group_id: str, user_id: str) -> Role:
    with get_session(engine) as session:
        member = _get_member(session, group_id, user_id)
        if member is None:
            raise NotFound("member_not_found")
        return normalize_role(member.role)


def _set_role(engine: Engine, group_id: str, user_id: str, role: Role) -> Membership:
    with get_session(engine) as session:
        member = _get_member(session, group_id, user_id)
        if member is None:
            raise NotFound("member_not_found")
        member.role = role.value
        notify_change(
            session,
            ChangeEvent(kind=ChangeKind.MEMBERSHIP, group_id=group_id, user_id=user_id),
        )
        return _membership_from_row(member)


def _delete_member(engine: Engine, group_id: str, user_id: str) -> None:
    with get_session(engine) as session:
        member = _get_member(session, group_id, user_id)
        if member is None:
            raise NotFound("member_not_found")
        session.delete(member)
        notify_change(
            session,
            ChangeEvent(kind=ChangeKind.MEMBERSHIP, group_id=group_id, user_id=user_id),
        )


def _insert_custom_role(
    engine: Engine, group_id: str, name: str, color: str, position: int,
    permissions: dict[str, bool],
) -> CustomRole:
    with get_session(engine) as session:
        if session.get(Group, group_id) is None:
            raise NotFound("group_not_found")
        row = CustomRoleRow(
            group_id=group_id, name=name, color=color, position=position,
            permissions=permissions,
        )
        session.add(row)
        session.flush()
        return custom_role_from_row(row)


def _set_custom_role(
    engine: Engine, group_id: str, user_id: str, custom_role_id: str | None,
) -> Membership:
    with get_session(engine) as session:
        member = _get_member(session, group_id, user_id)
        if member is None:
            raise NotFound("member_not_found")
        if custom_role_id is not None:
            row = session.get(CustomRoleRow, custom_role_id)
            if row is None or row.group_id != group_id:
                raise NotFound("custom_role_not_found")
        member.custom_role_id = custom_role_id
        session.flush()
        session.refresh(member)
        notify_change(
            session,
            ChangeEvent(kind=ChangeKind.MEMBERSHIP, group_id=group_id, user_id=user_id),
        )
        return _membership_from_row(member)


def _list_members(engine: Engine, group_id: str) -> list[Membership]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(GroupMember)
            .where(GroupMember.group_id == group_id)
            .order_by(GroupMember.joined_at.asc())
        ).all()
        members = [_membership_from_row(m) for m in rows]
    return sorted(members, key=lambda m: rank(m.role))


def _list_custom_roles(engine: Engine, group_id: str) -> list[CustomRole]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(CustomRoleRow)
            .where(CustomRoleRow.group_id == group_id)
            .order_by(CustomRoleRow.position.asc(), CustomRoleRow.name.asc())
        ).all()
        return [custom_role_from_row(r) for r in rows]


def _insert_message(engine: Engine, group_id: str, sender_id: str, content: str) -> GroupMessage:
    with get_session(engine) as session:
        message = GroupMessage(group_id=group_id, sender_id=sender_id, content=content)
        session.add(message)
        session.flush()
        session.refresh(message)
        notify_change(
            session,
            ChangeEvent(kind=ChangeKind.MESSAGE, group_id=group_id, message_id=message.id),
        )
        return message


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class MembershipService:
    """Group membership operations on behalf of the current actor."""

    def __init__(
        self,
        engine: Engine,
        identity: IdentityProvider,
        *,
        guard: RateGuard | None = None,
    ) -> None:
        self._engine = engine
        self._identity = identity
        self._guard = guard

    # -- groups -----------------------------------------------------------
    async def create_group(self, name: str, description: str | None = None) -> Group:
        """Create a group; the creator becomes its pastor."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("name_required", user_message="Group name is required.")
        enforce_rate(self._guard, "create_group")
        group = await call_store(
            _create_group, self._engine, name, description, self._identity.user_id,
        )
        logger.info("Group %s created by %s", group.id, self._identity.user_id)
        return group

    async def join_group(self, group_id: str) -> Membership:
        return await call_store(
            _add_member, self._engine, group_id, self._identity.user_id, Role.MEMBER,
        )

    async def leave_group(self, group_id: str) -> None:
        await call_store(_delete_member, self._engine, group_id, self._identity.user_id)

    async def add_member(
        self, group_id: str, user_id: str, role: Role = Role.MEMBER,
    ) -> Membership:
        """Invite *user_id* directly with *role* (strictly below the actor's)."""
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.MANAGE_MEMBERS)
        role = normalize_role(role)
        if not outranks(actor.role, role):
            raise PermissionDenied("cannot_assign_role")
        return await call_store(_add_member, self._engine, group_id, user_id, role)

    # -- roles ------------------------------------------------------------
    async def change_role(self, group_id: str, user_id: str, new_role: Role | str) -> Membership:
        """Promote or demote a member.

        The actor needs ``manage_roles`` and must outrank both the member's
        current role and *new_role*.
        """
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.MANAGE_ROLES)
        new_role = normalize_role(new_role)
        current = await call_store(_load_member_role, self._engine, group_id, user_id)
        if not can_modify_role(actor.role, current, new_role):
            logger.info(
                "%s (%s) may not change %s from %s to %s",
                actor.user_id, actor.role, user_id, current, new_role,
            )
            raise PermissionDenied("cannot_modify_role")
        enforce_rate(self._guard, "change_role")
        membership = await call_store(_set_role, self._engine, group_id, user_id, new_role)
        logger.info("Role of %s in %s changed %s → %s", user_id, group_id, current, new_role)
        return membership

    async def remove_member(self, group_id: str, user_id: str) -> None:
        actor = await self._identity.actor(group_id)
        target = await call_store(_load_member_role, self._engine, group_id, user_id)
        if not can_remove_member(actor.role, target):
            raise PermissionDenied("cannot_remove_member")
        await call_store(_delete_member, self._engine, group_id, user_id)
        logger.info("%s removed %s from %s", actor.user_id, user_id, group_id)

    async def create_custom_role(self, data: dict[str, Any] | CustomRoleCreate) -> CustomRole:
        payload = parse_input(CustomRoleCreate, data)
        actor = await self._identity.actor(payload.group_id)
        actor.require(PermissionKey.MANAGE_ROLES)
        # Store every flag so the row is a complete permission set
        permissions = RolePermissions.from_dict(payload.permissions).to_dict()
        return await call_store(
            _insert_custom_role, self._engine, payload.group_id, payload.name,
            payload.color, payload.position, permissions,
        )

    async def assign_custom_role(
        self, group_id: str, user_id: str, custom_role_id: str | None,
    ) -> Membership:
        """Attach (or with ``None`` detach) a custom role to a member."""
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.MANAGE_ROLES)
        current = await call_store(_load_member_role, self._engine, group_id, user_id)
        if not can_modify_role(actor.role, current):
            raise PermissionDenied("cannot_modify_role")
        return await call_store(
            _set_custom_role, self._engine, group_id, user_id, custom_role_id,
        )

    # -- reads ------------------------------------------------------------
    async def list_members(self, group_id: str) -> list[Membership]:
        """Members ordered most-senior first, then by join time."""
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.VIEW_MEMBERS)
        return await call_store(_list_members, self._engine, group_id)

    async def list_custom_roles(self, group_id: str) -> list[CustomRole]:
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.VIEW_MEMBERS)
        return await call_store(_list_custom_roles, self._engine, group_id)

    # -- messages ---------------------------------------------------------
    async def post_message(self, group_id: str, content: str) -> GroupMessage:
        """Send a chat message into the group."""
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.SEND_MESSAGES)
        content = (content or "").strip()
        if not content:
            raise ValidationError("content_required")
        enforce_rate(self._guard, "send_group_message")
        return await call_store(_insert_message, self._engine, group_id, actor.user_id, content)
