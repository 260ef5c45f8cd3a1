"""
tests/test_events.py — Events, RSVPs and capacity
==================================================
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from congregate.database.models import EventRecurrence, RSVPStatus
from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.local_store import MemoryStore
from congregate.engine.rate_guard import RateGuard
from congregate.services.errors import (
    CapacityExceeded,
    NotFound,
    PermissionDenied,
    RateLimited,
    ValidationError,
)
from congregate.services.event_service import EventManager


def run_async(coro):
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


@pytest.fixture
def manager_for(community, identity_for, clock):
    def _make(user_id: str, **kwargs) -> EventManager:
        return EventManager(community.engine, identity_for(user_id), clock=clock, **kwargs)

    return _make


def _payload(community, clock, creator: str = "u-mod", **overrides):
    data = {
        "group_id": community.group_id,
        "creator_id": creator,
        "title": "Church Picnic",
        "start_time": clock() + timedelta(days=7),
        "location": "Riverside Park",
    }
    data.update(overrides)
    return data


def _capacity_event(community, clock, manager_for, capacity: int = 2):
    organiser = manager_for("u-mod", auto_rsvp_creator=False)
    return run_async(organiser.create(_payload(community, clock, max_capacity=capacity)))


class TestCreate:
    def test_creator_auto_rsvps_going(self, community, clock, manager_for):
        detail = run_async(manager_for("u-mod").create(_payload(community, clock)))
        assert detail.going_count == 1
        assert detail.user_status is RSVPStatus.GOING
        assert detail.recurrence is EventRecurrence.ONCE
        assert detail.spots_left is None
        assert not detail.is_full

    def test_auto_rsvp_disabled(self, community, clock, manager_for):
        detail = run_async(
            manager_for("u-mod", auto_rsvp_creator=False).create(_payload(community, clock))
        )
        assert detail.going_count == 0
        assert detail.user_status is None

    def test_member_cannot_create(self, community, clock, manager_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(manager_for("u-member").create(_payload(community, clock, creator="u-member")))
        assert info.value.detail == "missing_create_events"

    def test_creator_must_be_caller(self, community, clock, manager_for):
        with pytest.raises(PermissionDenied) as info:
            run_async(manager_for("u-mod").create(_payload(community, clock, creator="u-pastor")))
        assert info.value.detail == "creator_mismatch"

    def test_zero_capacity_rejected(self, community, clock, manager_for):
        with pytest.raises(ValidationError) as info:
            run_async(manager_for("u-mod").create(_payload(community, clock, max_capacity=0)))
        assert info.value.detail == "invalid_max_capacity"

    def test_rate_limited(self, community, clock, manager_for):
        mod = manager_for("u-mod", guard=RateGuard(MemoryStore()))
        run_async(mod.create(_payload(community, clock)))
        with pytest.raises(RateLimited):
            run_async(mod.create(_payload(community, clock, title="Second")))


class TestCapacity:
    """Going is accepted only while others-going < max_capacity."""

    def test_full_event_scenario(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        u1, u2, u3 = (manager_for(u) for u in ("u-member", "u-member2", "u-member3"))

        run_async(u1.rsvp(event.id, "going"))
        run_async(u2.rsvp(event.id, RSVPStatus.GOING))
        assert u2.cached(event.id).is_full
        assert u2.cached(event.id).spots_left == 0

        with pytest.raises(CapacityExceeded) as info:
            run_async(u3.rsvp(event.id, "going"))
        assert info.value.user_message == "This event is full."

        run_async(u1.rsvp(event.id, "maybe"))
        entry = run_async(u3.rsvp(event.id, "going"))
        assert entry.status is RSVPStatus.GOING

        detail = run_async(u3.get(event.id))
        assert (detail.going_count, detail.maybe_count) == (2, 1)
        assert detail.user_status is RSVPStatus.GOING

    def test_resubmitting_going_does_not_double_count(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for, capacity=1)
        u1 = manager_for("u-member")
        run_async(u1.rsvp(event.id, "going"))
        run_async(u1.rsvp(event.id, "going"))
        assert run_async(u1.get(event.id)).going_count == 1

    def test_maybe_and_not_going_always_accepted(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for, capacity=1)
        run_async(manager_for("u-member").rsvp(event.id, "going"))
        run_async(manager_for("u-member2").rsvp(event.id, "maybe"))
        run_async(manager_for("u-member3").rsvp(event.id, "not_going"))
        detail = run_async(manager_for("u-mod").get(event.id))
        assert (detail.going_count, detail.maybe_count, detail.not_going_count) == (1, 1, 1)

    def test_concurrent_going_never_overfills(self, community, clock, manager_for, inline_store):
        event = _capacity_event(community, clock, manager_for)
        managers = [manager_for(u) for u in ("u-member", "u-member2", "u-member3", "u-visitor")]

        async def everyone():
            return await asyncio.gather(
                *(m.rsvp(event.id, "going") for m in managers), return_exceptions=True,
            )

        results = run_async(everyone())
        failures = [r for r in results if isinstance(r, CapacityExceeded)]
        assert len(failures) == 2
        assert run_async(managers[0].get(event.id)).going_count == 2

    def test_unlimited_capacity(self, community, clock, manager_for):
        event = run_async(
            manager_for("u-mod", auto_rsvp_creator=False).create(_payload(community, clock))
        )
        for user in ("u-member", "u-member2", "u-member3", "u-visitor", "u-admin"):
            run_async(manager_for(user).rsvp(event.id, "going"))
        assert run_async(manager_for("u-mod").get(event.id)).going_count == 5


class TestRsvpRules:
    def test_invalid_status(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        with pytest.raises(ValidationError) as info:
            run_async(manager_for("u-member").rsvp(event.id, "perhaps"))
        assert info.value.detail == "invalid_status"

    def test_non_member_rejected(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        with pytest.raises(PermissionDenied) as info:
            run_async(manager_for("u-stranger").rsvp(event.id, "going"))
        assert info.value.detail == "not_a_member"

    def test_only_own_rsvp(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        with pytest.raises(PermissionDenied):
            run_async(manager_for("u-member").rsvp(event.id, "going", user_id="u-member2"))

    def test_missing_event(self, community, manager_for):
        with pytest.raises(NotFound):
            run_async(manager_for("u-member").rsvp("e-missing", "going"))

    def test_cancelled_event_rejects_rsvp(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        member = manager_for("u-member")
        run_async(member.rsvp(event.id, "going"))
        cancelled = run_async(manager_for("u-mod").cancel(event.id))
        assert cancelled.is_cancelled
        assert cancelled.going_count == 1

        # member still holds the pre-cancel detail; the store refuses anyway
        assert not member.cached(event.id).is_cancelled
        with pytest.raises(ValidationError) as info:
            run_async(member.rsvp(event.id, "maybe"))
        assert info.value.detail == "event_cancelled"

        with pytest.raises(ValidationError):
            run_async(manager_for("u-member2").rsvp(event.id, "going"))

    def test_remove_rsvp(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for, capacity=1)
        member = manager_for("u-member")
        run_async(member.rsvp(event.id, "going"))
        assert run_async(member.remove_rsvp(event.id)) is True
        assert run_async(member.remove_rsvp(event.id)) is False
        assert member.cached(event.id).going_count == 0
        run_async(manager_for("u-member2").rsvp(event.id, "going"))

    def test_rsvp_list_grouped(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for, capacity=5)
        run_async(manager_for("u-member").rsvp(event.id, "going"))
        clock.advance(minutes=1)
        run_async(manager_for("u-member2").rsvp(event.id, "maybe"))
        clock.advance(minutes=1)
        run_async(manager_for("u-member3").rsvp(event.id, "going"))
        grouped = run_async(manager_for("u-mod").rsvp_list(event.id))
        assert set(grouped) == set(RSVPStatus)
        assert [e.user_id for e in grouped[RSVPStatus.GOING]] == ["u-member", "u-member3"]
        assert [e.user_id for e in grouped[RSVPStatus.MAYBE]] == ["u-member2"]
        assert grouped[RSVPStatus.NOT_GOING] == []

    def test_rsvp_rate_limited(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        member = manager_for("u-member", guard=RateGuard(MemoryStore()))
        run_async(member.rsvp(event.id, "going"))
        with pytest.raises(RateLimited):
            run_async(member.rsvp(event.id, "maybe"))


class TestEditing:
    def test_creator_updates(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock)))
        updated = run_async(mod.update(event.id, {"title": "Picnic (moved)", "location": "Hall"}))
        assert updated.title == "Picnic (moved)"
        assert updated.location == "Hall"
        assert updated.going_count == 1

    def test_end_before_start_rejected(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock)))
        with pytest.raises(ValidationError) as info:
            run_async(mod.update(event.id, {"end_time": event.start_time - timedelta(hours=1)}))
        assert info.value.detail == "invalid_end_time"

    def test_capacity_cannot_drop_below_going(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock, max_capacity=3)))
        run_async(manager_for("u-member").rsvp(event.id, "going"))
        run_async(manager_for("u-member2").rsvp(event.id, "going"))

        with pytest.raises(ValidationError) as info:
            run_async(mod.update(event.id, {"max_capacity": 1}))
        assert info.value.detail == "capacity_below_attendance"
        detail = run_async(mod.get(event.id))
        assert (detail.max_capacity, detail.going_count) == (3, 3)

        updated = run_async(mod.update(event.id, {"max_capacity": 3, "title": "Picnic"}))
        assert updated.is_full

    def test_capacity_raise_and_maybe_ignored(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for, capacity=2)
        run_async(manager_for("u-member").rsvp(event.id, "going"))
        run_async(manager_for("u-member2").rsvp(event.id, "maybe"))
        updated = run_async(manager_for("u-mod").update(event.id, {"max_capacity": 1}))
        assert updated.max_capacity == 1
        assert updated.is_full

    def test_non_creator_denied(self, community, clock, manager_for):
        event = run_async(manager_for("u-mod").create(_payload(community, clock)))
        with pytest.raises(PermissionDenied) as info:
            run_async(manager_for("u-mod2").update(event.id, {"title": "Mine now"}))
        assert info.value.detail == "not_creator"

    def test_group_manager_may_cancel(self, community, clock, manager_for):
        event = run_async(manager_for("u-mod").create(_payload(community, clock)))
        assert run_async(manager_for("u-admin").cancel(event.id)).is_cancelled

    def test_cancelled_event_cannot_be_edited(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock)))
        run_async(mod.cancel(event.id))
        with pytest.raises(ValidationError):
            run_async(mod.update(event.id, {"title": "Back on"}))
        assert run_async(mod.cancel(event.id)).is_cancelled

    def test_delete(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock)))
        run_async(mod.delete(event.id))
        assert mod.cached(event.id) is None
        with pytest.raises(NotFound):
            run_async(mod.get(event.id))


class TestListing:
    def test_upcoming_excludes_past_and_cancelled(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        later = run_async(mod.create(_payload(community, clock, title="Later",
                                              start_time=clock() + timedelta(days=3))))
        sooner = run_async(mod.create(_payload(community, clock, title="Sooner",
                                               start_time=clock() + timedelta(days=1))))
        run_async(mod.create(_payload(community, clock, title="Past",
                                      start_time=clock() - timedelta(days=1))))
        cancelled = run_async(mod.create(_payload(community, clock, title="Off",
                                                  start_time=clock() + timedelta(days=2))))
        run_async(mod.cancel(cancelled.id))

        upcoming = run_async(manager_for("u-member").list_upcoming(community.group_id))
        assert [e.id for e in upcoming] == [sooner.id, later.id]
        assert upcoming[0].user_status is None
        assert upcoming[0].going_count == 1


class TestReconciliation:
    def test_on_change_refreshes_counts(self, community, clock, manager_for):
        event = _capacity_event(community, clock, manager_for)
        watcher = manager_for("u-visitor")
        run_async(watcher.get(event.id))
        run_async(manager_for("u-member").rsvp(event.id, "going"))
        assert watcher.cached(event.id).going_count == 0
        run_async(watcher.on_change(ChangeEvent(ChangeKind.RSVP, event_id=event.id)))
        assert watcher.cached(event.id).going_count == 1

    def test_on_change_evicts_deleted_event(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock)))
        watcher = manager_for("u-member")
        run_async(watcher.get(event.id))
        run_async(mod.delete(event.id))
        run_async(watcher.on_change(ChangeEvent(ChangeKind.EVENT, event_id=event.id)))
        assert watcher.cached(event.id) is None

    def test_close_discards_cache(self, community, clock, manager_for):
        mod = manager_for("u-mod")
        event = run_async(mod.create(_payload(community, clock)))
        mod.close()
        assert mod.cached(event.id) is None
