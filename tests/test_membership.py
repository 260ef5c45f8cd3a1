"""
tests/test_membership.py — Groups, members, roles and actor contexts
=====================================================================
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from congregate.database.models import GroupMember
from congregate.engine.local_store import MemoryStore
from congregate.engine.permissions import PermissionKey, Role
from congregate.engine.rate_guard import RateGuard
from congregate.services.errors import (
    AlreadyExists,
    NotFound,
    PermissionDenied,
    RateLimited,
    ValidationError,
)
from congregate.services.identity import ActorContext, StaticIdentity, load_actor
from congregate.services.membership_service import MembershipService


def run_async(coro):
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def service_for(community, identity_for):
    def _make(user_id: str, **kwargs) -> MembershipService:
        return MembershipService(community.engine, identity_for(user_id), **kwargs)

    return _make


def _stored_role(engine, group_id: str, user_id: str) -> str | None:
    with Session(engine) as session:
        return session.scalar(
            select(GroupMember.role).where(
                GroupMember.group_id == group_id, GroupMember.user_id == user_id,
            )
        )


class TestActorContext:
    """Store rows → actor contexts."""

    def test_legacy_leader_acts_as_pastor(self, community):
        ctx = load_actor(community.engine, community.group_id, "u-leader")
        assert ctx.role is Role.PASTOR
        assert ctx.can(PermissionKey.MANAGE_GROUP)

    def test_custom_role_overrides_moderator_defaults(self, community):
        ctx = load_actor(community.engine, community.group_id, "u-mod2")
        assert ctx.role is Role.MODERATOR
        assert ctx.custom_role is not None
        assert ctx.custom_role.id == community.stripped_role_id
        assert not ctx.can(PermissionKey.PIN_MESSAGES)
        assert ctx.can(PermissionKey.DELETE_MESSAGES)

    def test_non_member_is_visitor(self, community):
        ctx = load_actor(community.engine, community.group_id, "u-stranger")
        assert ctx.role is Role.VISITOR
        assert ctx.is_member is False

    def test_require_names_the_missing_key(self):
        ctx = ActorContext(user_id="u", group_id="g", role=Role.MEMBER)
        with pytest.raises(PermissionDenied) as info:
            ctx.require(PermissionKey.PIN_MESSAGES)
        assert info.value.detail == "missing_pin_messages"

    def test_static_identity_defaults_to_visitor(self):
        identity = StaticIdentity("u-1")
        ctx = run_async(identity.actor("g-1"))
        assert ctx.role is Role.VISITOR and not ctx.is_member
        identity.set(ActorContext(user_id="u-1", group_id="g-1", role=Role.ADMIN))
        assert run_async(identity.actor("g-1")).role is Role.ADMIN


class TestGroups:
    def test_creator_becomes_pastor(self, community, service_for):
        service = service_for("u-new")
        group = run_async(service.create_group("  Men's Breakfast  ", "Saturdays"))
        assert group.name == "Men's Breakfast"
        assert _stored_role(community.engine, group.id, "u-new") == "pastor"
        members = run_async(service.list_members(group.id))
        assert [(m.user_id, m.role) for m in members] == [("u-new", Role.PASTOR)]

    def test_blank_name_rejected(self, service_for):
        with pytest.raises(ValidationError) as info:
            run_async(service_for("u-new").create_group("   "))
        assert info.value.detail == "name_required"

    def test_create_group_rate_limited(self, service_for):
        service = service_for("u-new", guard=RateGuard(MemoryStore()))
        run_async(service.create_group("One"))
        with pytest.raises(RateLimited) as info:
            run_async(service.create_group("Two"))
        assert info.value.detail == "rate_limited_create_group"

    def test_join_and_leave(self, community, service_for):
        identity_user = "u-newcomer"
        service = service_for(identity_user)
        membership = run_async(service.join_group(community.group_id))
        assert membership.role is Role.MEMBER
        with pytest.raises(AlreadyExists):
            run_async(service.join_group(community.group_id))
        run_async(service.leave_group(community.group_id))
        assert _stored_role(community.engine, community.group_id, identity_user) is None

    def test_join_missing_group(self, service_for):
        with pytest.raises(NotFound) as info:
            run_async(service_for("u-x").join_group("g-missing"))
        assert info.value.detail == "group_not_found"


class TestAddMember:
    def test_admin_adds_moderator(self, community, service_for):
        membership = run_async(
            service_for("u-admin").add_member(community.group_id, "u-new", Role.MODERATOR)
        )
        assert membership.role is Role.MODERATOR

    def test_admin_cannot_add_admin(self, community, service_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(service_for("u-admin").add_member(community.group_id, "u-new", Role.ADMIN))
        assert info.value.detail == "cannot_assign_role"

    def test_moderator_lacks_manage_members(self, community, service_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(service_for("u-mod").add_member(community.group_id, "u-new"))
        assert info.value.detail == "missing_manage_members"


class TestChangeRole:
    """Strictly-outranks rule on target and new role."""

    def test_admin_promotes_member_to_moderator(self, community, service_for):
        membership = run_async(
            service_for("u-admin").change_role(community.group_id, "u-member", "moderator")
        )
        assert membership.role is Role.MODERATOR
        assert _stored_role(community.engine, community.group_id, "u-member") == "moderator"

    def test_admin_cannot_grant_admin(self, community, service_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(service_for("u-admin").change_role(community.group_id, "u-member", Role.ADMIN))
        assert info.value.detail == "cannot_modify_role"
        assert _stored_role(community.engine, community.group_id, "u-member") == "member"

    def test_admin_cannot_touch_legacy_leader(self, community, service_for):
        with pytest.raises(PermissionDenied):
            run_async(
                service_for("u-admin").change_role(community.group_id, "u-leader", Role.MEMBER)
            )

    def test_legacy_leader_demotes_admin(self, community, service_for):
        run_async(service_for("u-leader").change_role(community.group_id, "u-admin", Role.MEMBER))
        assert _stored_role(community.engine, community.group_id, "u-admin") == "member"

    def test_moderator_lacks_manage_roles(self, community, service_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(service_for("u-mod").change_role(community.group_id, "u-visitor", Role.MEMBER))
        assert info.value.detail == "missing_manage_roles"

    def test_unknown_target(self, community, service_for):
        with pytest.raises(NotFound) as info:
            run_async(service_for("u-pastor").change_role(community.group_id, "u-ghost", Role.MEMBER))
        assert info.value.detail == "member_not_found"


class TestRemoveMember:
    def test_admin_removes_member(self, community, service_for):
        run_async(service_for("u-admin").remove_member(community.group_id, "u-member3"))
        assert _stored_role(community.engine, community.group_id, "u-member3") is None

    def test_equal_rank_denied(self, community, service_for):
        run_async(service_for("u-pastor").change_role(community.group_id, "u-member", Role.ADMIN))
        with pytest.raises(PermissionDenied) as info:
            run_async(service_for("u-admin").remove_member(community.group_id, "u-member"))
        assert info.value.detail == "cannot_remove_member"

    def test_moderator_denied(self, community, service_for):
        with pytest.raises(PermissionDenied):
            run_async(service_for("u-mod").remove_member(community.group_id, "u-visitor"))


class TestMembershipChangesApplyImmediately:
    """A long-lived identity sees role changes made by someone else."""

    def test_demoted_admin_loses_authority(self, community, identity_for):
        admin = MembershipService(community.engine, identity_for("u-admin"))
        run_async(admin.add_member(community.group_id, "u-new1"))

        run_async(
            MembershipService(community.engine, identity_for("u-pastor"))
            .change_role(community.group_id, "u-admin", Role.MEMBER)
        )

        with pytest.raises(PermissionDenied) as info:
            run_async(admin.add_member(community.group_id, "u-new2"))
        assert info.value.detail == "missing_manage_members"
        assert _stored_role(community.engine, community.group_id, "u-new2") is None

    def test_promotion_seen_by_same_identity(self, community, identity_for):
        member = MembershipService(community.engine, identity_for("u-member"))
        with pytest.raises(PermissionDenied):
            run_async(member.add_member(community.group_id, "u-new"))

        run_async(
            MembershipService(community.engine, identity_for("u-pastor"))
            .change_role(community.group_id, "u-member", Role.ADMIN)
        )

        membership = run_async(member.add_member(community.group_id, "u-new"))
        assert membership.role is Role.MEMBER

    def test_joining_turns_visitor_into_member(self, community, service_for):
        newcomer = service_for("u-newbie")
        with pytest.raises(PermissionDenied) as info:
            run_async(newcomer.post_message(community.group_id, "Hello"))
        assert info.value.detail == "missing_send_messages"

        run_async(newcomer.join_group(community.group_id))
        message = run_async(newcomer.post_message(community.group_id, "Hello"))
        assert message.sender_id == "u-newbie"

    def test_removed_member_drops_to_visitor(self, community, identity_for):
        identity = identity_for("u-member3")
        assert run_async(identity.actor(community.group_id)).is_member
        run_async(
            MembershipService(community.engine, identity_for("u-admin"))
            .remove_member(community.group_id, "u-member3")
        )
        ctx = run_async(identity.actor(community.group_id))
        assert not ctx.is_member
        assert ctx.role is Role.VISITOR


class TestCustomRoles:
    def test_create_and_assign(self, community, service_for, identity_for):
        admin = service_for("u-admin")
        role = run_async(admin.create_custom_role({
            "group_id": community.group_id,
            "name": "Worship Team",
            "permissions": {"send_messages": True, "pin_messages": True},
        }))
        assert role.permissions.pin_messages
        assert not role.permissions.react

        membership = run_async(admin.assign_custom_role(community.group_id, "u-member", role.id))
        assert membership.custom_role is not None
        assert membership.custom_role.id == role.id

        ctx = run_async(identity_for("u-member").actor(community.group_id))
        assert ctx.can(PermissionKey.PIN_MESSAGES)
        assert not ctx.can(PermissionKey.REACT)

        cleared = run_async(admin.assign_custom_role(community.group_id, "u-member", None))
        assert cleared.custom_role is None

    def test_role_from_another_group_rejected(self, community, service_for):
        role = run_async(service_for("u-pastor").create_custom_role({
            "group_id": community.youth_group_id, "name": "Youth Lead",
        }))
        with pytest.raises(NotFound) as info:
            run_async(
                service_for("u-admin").assign_custom_role(community.group_id, "u-member", role.id)
            )
        assert info.value.detail == "custom_role_not_found"

    def test_member_cannot_create_roles(self, community, service_for):
        with pytest.raises(PermissionDenied):
            run_async(service_for("u-member").create_custom_role({
                "group_id": community.group_id, "name": "Self-made",
            }))

    def test_list_custom_roles(self, community, service_for):
        roles = run_async(service_for("u-member").list_custom_roles(community.group_id))
        assert [r.name for r in roles] == ["Greeter"]


class TestListMembers:
    def test_sorted_most_senior_first(self, community, service_for):
        members = run_async(service_for("u-visitor").list_members(community.group_id))
        ranks = [m.role for m in members]
        assert ranks[:2] == [Role.PASTOR, Role.PASTOR]
        assert ranks[-1] is Role.VISITOR
        assert len(members) == 9


class TestPostMessage:
    def test_member_posts(self, community, service_for):
        message = run_async(service_for("u-member").post_message(community.group_id, " Hello "))
        assert message.content == "Hello"
        assert message.id
        assert message.created_at is not None

    def test_visitor_cannot_post(self, community, service_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(service_for("u-visitor").post_message(community.group_id, "Hi"))
        assert info.value.detail == "missing_send_messages"

    def test_empty_content(self, community, service_for):
        with pytest.raises(ValidationError):
            run_async(service_for("u-member").post_message(community.group_id, "  "))
