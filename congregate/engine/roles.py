"""
congregate.engine.roles — Role Assignment Rules
================================================

Boolean predicates deciding whether one member may change another member's
role or remove them from a group.  Callers turn a ``False`` into a
user-facing denial; nothing here raises.
"""

from __future__ import annotations

from congregate.engine.permissions import (
    ROLE_HIERARCHY,
    PermissionKey,
    Role,
    has_permission,
    outranks,
    rank,
)

__all__ = ["can_modify_role", "can_remove_member", "assignable_roles"]


def can_modify_role(
    actor_role: Role, target_role: Role, new_role: Role | None = None
) -> bool:
    """Return True if *actor_role* may change a *target_role* member's role.

    - The actor must strictly outrank the target.
    - When *new_role* is given, the actor must also strictly outrank it
      (nobody grants a role equal to or above their own).
    """
    if not outranks(actor_role, target_role):
        return False
    if new_role is not None and not outranks(actor_role, new_role):
        return False
    return True


def can_remove_member(actor_role: Role, target_role: Role) -> bool:
    """Return True if *actor_role* may remove a *target_role* member.

    Uses the base role's ``manage_members`` flag, not a custom override.
    """
    return has_permission(actor_role, PermissionKey.MANAGE_MEMBERS) and outranks(
        actor_role, target_role
    )


def assignable_roles(actor_role: Role) -> list[Role]:
    """Every role strictly below *actor_role*, most senior first."""
    return list(ROLE_HIERARCHY[rank(actor_role) + 1:])
