"""
congregate.engine.permissions — Role Hierarchy & Permission Lookup
====================================================================

Role hierarchy (highest to lowest)::

    pastor > admin > moderator > member > visitor

Every built-in role has a fixed default permission set.  A group may attach
a :class:`CustomRole` to a member; when present its permissions **replace**
the base role's permissions wholesale.  Missing keys in a stored custom role
are *not* backfilled from the base role — they are simply ``False``.

Everything in this module is pure: no I/O, no exceptions for valid input.
Raw role strings coming from storage must go through :func:`normalize_role`
first.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, fields
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "Role",
    "PermissionKey",
    "RolePermissions",
    "CustomRole",
    "ROLE_HIERARCHY",
    "default_permissions",
    "effective_permissions",
    "has_permission",
    "rank",
    "outranks",
    "normalize_role",
]


class Role(enum.StrEnum):
    """Built-in group roles, declared highest authority first."""
    PASTOR = "pastor"
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"
    VISITOR = "visitor"


class PermissionKey(enum.StrEnum):
    """Names of the twelve boolean permissions in :class:`RolePermissions`."""
    MANAGE_GROUP = "manage_group"
    MANAGE_MEMBERS = "manage_members"
    MANAGE_ROLES = "manage_roles"
    PIN_MESSAGES = "pin_messages"
    DELETE_MESSAGES = "delete_messages"
    CREATE_EVENTS = "create_events"
    POST_ANNOUNCEMENTS = "post_announcements"
    MODERATE_CONTENT = "moderate_content"
    MUTE_MEMBERS = "mute_members"
    SEND_MESSAGES = "send_messages"
    REACT = "react"
    VIEW_MEMBERS = "view_members"


# Lower index = higher rank
ROLE_HIERARCHY: tuple[Role, ...] = tuple(Role)

_RANKS: dict[Role, int] = {role: idx for idx, role in enumerate(ROLE_HIERARCHY)}

# Legacy role names still present in older membership rows
_LEGACY_ROLES: dict[str, Role] = {
    "leader": Role.PASTOR,
}


@dataclass(frozen=True, slots=True)
class RolePermissions:
    """Immutable set of named permission flags."""

    manage_group: bool = False
    manage_members: bool = False
    manage_roles: bool = False
    pin_messages: bool = False
    delete_messages: bool = False
    create_events: bool = False
    post_announcements: bool = False
    moderate_content: bool = False
    mute_members: bool = False
    send_messages: bool = False
    react: bool = False
    view_members: bool = False

    def allows(self, key: PermissionKey) -> bool:
        return bool(getattr(self, key.value))

    def to_dict(self) -> dict[str, bool]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> RolePermissions:
        """Build from a stored mapping.

        Unknown keys are ignored; missing keys are ``False``.  Legacy
        ``canPinMessages``-style keys are accepted as well.
        """
        raw = raw or {}
        values: dict[str, bool] = {}
        for f in fields(cls):
            legacy_key = "can" + "".join(part.title() for part in f.name.split("_"))
            value = raw.get(f.name, raw.get(legacy_key, False))
            values[f.name] = bool(value)
        return cls(**values)


@dataclass(frozen=True, slots=True)
class CustomRole:
    """Group-scoped, fully self-contained permission set."""

    id: str
    group_id: str
    name: str
    permissions: RolePermissions
    color: str = "#6b7280"
    position: int = 0


_ALL = RolePermissions(**{f.name: True for f in fields(RolePermissions)})

DEFAULT_PERMISSIONS: dict[Role, RolePermissions] = {
    Role.PASTOR: _ALL,
    Role.ADMIN: _ALL,
    Role.MODERATOR: RolePermissions(
        pin_messages=True,
        delete_messages=True,
        create_events=True,
        moderate_content=True,
        mute_members=True,
        send_messages=True,
        react=True,
        view_members=True,
    ),
    Role.MEMBER: RolePermissions(
        send_messages=True,
        react=True,
        view_members=True,
    ),
    Role.VISITOR: RolePermissions(
        view_members=True,
    ),
}


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------
def default_permissions(role: Role) -> RolePermissions:
    """Return the fixed permission set for a built-in role."""
    return DEFAULT_PERMISSIONS[role]


def effective_permissions(
    role: Role, custom_role: CustomRole | None = None
) -> RolePermissions:
    """Permissions actually in force for a member.

    A custom role fully overrides the base role; it is never merged.
    """
    if custom_role is not None:
        return custom_role.permissions
    return default_permissions(role)


def has_permission(
    role: Role, key: PermissionKey, custom_role: CustomRole | None = None
) -> bool:
    return effective_permissions(role, custom_role).allows(key)


# ---------------------------------------------------------------------------
# Hierarchy
# ---------------------------------------------------------------------------
def rank(role: Role) -> int:
    """Position in the hierarchy; 0 is the most senior role."""
    return _RANKS[role]


def outranks(role_a: Role, role_b: Role) -> bool:
    """Strict ordering: a role never outranks itself."""
    return rank(role_a) < rank(role_b)


# ---------------------------------------------------------------------------
# Ingestion boundary
# ---------------------------------------------------------------------------
def normalize_role(raw: str | Role | None) -> Role:
    """Map a stored role string into the closed :class:`Role` enumeration.

    ``"leader"`` (pre-hierarchy data) becomes :attr:`Role.PASTOR`; anything
    unrecognised falls back to :attr:`Role.MEMBER`.
    """
    if isinstance(raw, Role):
        return raw
    if raw is None:
        return Role.MEMBER
    value = raw.strip().lower()
    if value in _LEGACY_ROLES:
        return _LEGACY_ROLES[value]
    try:
        return Role(value)
    except ValueError:
        logger.warning("Unknown role %r in membership data — treating as member", raw)
        return Role.MEMBER
