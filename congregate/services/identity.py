"""
congregate.services.identity — Actor Context per Group
=======================================================

The identity/session collaborator supplies *who* is acting; this module turns
that into an :class:`ActorContext` for a given group: the member's role
(normalised from whatever string the store holds) plus their optional custom
role.  Managers check permissions against the context before touching the
store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from sqlalchemy import select

from congregate.database.engine import get_session
from congregate.database.models import CustomRoleRow, GroupMember
from congregate.engine.permissions import (
    CustomRole,
    PermissionKey,
    Role,
    RolePermissions,
    effective_permissions,
    normalize_role,
)
from congregate.services.errors import PermissionDenied, call_store

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ActorContext:
    """The acting user as seen from one group."""

    user_id: str
    group_id: str
    role: Role
    custom_role: CustomRole | None = None
    is_member: bool = True

    @property
    def permissions(self) -> RolePermissions:
        return effective_permissions(self.role, self.custom_role)

    def can(self, key: PermissionKey) -> bool:
        return self.permissions.allows(key)

    def require(self, key: PermissionKey) -> None:
        """Raise :class:`PermissionDenied` unless the actor holds *key*."""
        if not self.can(key):
            logger.info(
                "Denied %s for user %s (role=%s, custom=%s) in group %s",
                key, self.user_id, self.role,
                self.custom_role.name if self.custom_role else None, self.group_id,
            )
            raise PermissionDenied(f"missing_{key.value}")


class IdentityProvider(Protocol):
    """What the managers need from the session layer."""

    @property
    def user_id(self) -> str: ...

    async def actor(self, group_id: str) -> ActorContext: ...


# ---------------------------------------------------------------------------
# Store-backed implementation
# ---------------------------------------------------------------------------
def custom_role_from_row(row: CustomRoleRow) -> CustomRole:
    return CustomRole(
        id=row.id,
        group_id=row.group_id,
        name=row.name,
        color=row.color,
        position=row.position,
        permissions=RolePermissions.from_dict(row.permissions),
    )


def load_actor(engine: Engine, group_id: str, user_id: str) -> ActorContext:
    """Read the membership row for (*group_id*, *user_id*) — sync, run via run_db.

    Non-members get a visitor context flagged ``is_member=False``.
    """
    with get_session(engine) as session:
        member = session.scalar(
            select(GroupMember).where(
                GroupMember.group_id == group_id,
                GroupMember.user_id == user_id,
            )
        )
        if member is None:
            return ActorContext(
                user_id=user_id, group_id=group_id, role=Role.VISITOR, is_member=False,
            )
        custom = None
        if member.custom_role_id is not None:
            row = session.get(CustomRoleRow, member.custom_role_id)
            if row is not None:
                custom = custom_role_from_row(row)
        return ActorContext(
            user_id=user_id,
            group_id=group_id,
            role=normalize_role(member.role),
            custom_role=custom,
        )


class StoreIdentity:
    """:class:`IdentityProvider` reading memberships from the shared store.

    Every call re-reads the membership row, so a promotion, demotion, join
    or removal made by anyone applies to the very next action.
    """

    def __init__(self, engine: Engine, user_id: str) -> None:
        self._engine = engine
        self._user_id = user_id

    @property
    def user_id(self) -> str:
        return self._user_id

    async def actor(self, group_id: str) -> ActorContext:
        return await call_store(load_actor, self._engine, group_id, self._user_id)


class StaticIdentity:
    """Fixed contexts, keyed by group id.  Handy for tools and tests."""

    def __init__(self, user_id: str, contexts: dict[str, ActorContext] | None = None) -> None:
        self._user_id = user_id
        self._contexts = dict(contexts or {})

    @property
    def user_id(self) -> str:
        return self._user_id

    def set(self, ctx: ActorContext) -> None:
        self._contexts[ctx.group_id] = ctx

    async def actor(self, group_id: str) -> ActorContext:
        ctx = self._contexts.get(group_id)
        if ctx is None:
            return ActorContext(
                user_id=self._user_id, group_id=group_id, role=Role.VISITOR, is_member=False,
            )
        return ctx
