"""
congregate.services.event_service — Event RSVP Manager
=======================================================

Group events with optional capacity.

Capacity rule
-------------
A ``going`` RSVP is accepted only while the number of *other* users already
``going`` is below ``max_capacity``.  Capacity is checked at the moment of
the transition, never reserved ahead:

* re-submitting ``going`` does not count the user twice;
* with ``max_capacity = N`` the Nth ``going`` succeeds, the (N+1)th raises
  :class:`~congregate.services.errors.CapacityExceeded`;
* ``maybe`` / ``not_going`` are always accepted and free the user's slot.

Within one session ``going`` transitions are serialised per event with an
``asyncio.Lock``; across sessions the store locks the event row
(``SELECT … FOR UPDATE``) so the count and the upsert happen atomically.

Cancelling is terminal.  RSVP rows are kept for display but no new RSVP is
accepted.  Recurrence is descriptive only; each occurrence is its own row.
There is no waitlist.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from congregate.database.engine import get_session
from congregate.database.models import (
    EventRecurrence,
    EventRSVP,
    GroupEvent,
    RSVPStatus,
    as_utc,
)
from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.notifications import notify_change
from congregate.engine.optimistic import ViewScope
from congregate.engine.permissions import PermissionKey
from congregate.services.errors import (
    CapacityExceeded,
    NotFound,
    PermissionDenied,
    ValidationError,
    call_store,
    enforce_rate,
)
from congregate.services.schemas import EventCreate, EventUpdate, parse_input

if TYPE_CHECKING:
    from sqlalchemy import Engine
    from sqlalchemy.orm import Session

    from congregate.engine.rate_guard import RateGuard
    from congregate.services.identity import ActorContext, IdentityProvider

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EventDetail:
    id: str
    group_id: str
    creator_id: str
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime | None
    location: str | None
    location_url: str | None
    recurrence: EventRecurrence
    recurrence_end_date: datetime | None
    max_capacity: int | None
    reminder_24h: bool
    reminder_1h: bool
    custom_reminder_minutes: int | None
    is_cancelled: bool
    going_count: int = 0
    maybe_count: int = 0
    not_going_count: int = 0
    user_status: RSVPStatus | None = None

    @property
    def is_full(self) -> bool:
        return self.max_capacity is not None and self.going_count >= self.max_capacity

    @property
    def spots_left(self) -> int | None:
        if self.max_capacity is None:
            return None
        return max(0, self.max_capacity - self.going_count)


@dataclass(frozen=True, slots=True)
class RSVPEntry:
    event_id: str
    user_id: str
    status: RSVPStatus
    updated_at: datetime | None = None


def _entry(row: EventRSVP) -> RSVPEntry:
    return RSVPEntry(
        event_id=row.event_id,
        user_id=row.user_id,
        status=RSVPStatus(row.status),
        updated_at=as_utc(row.updated_at),
    )


def _status_counts(session: Session, event_ids: list[str]) -> dict[str, dict[str, int]]:
    counts: dict[str, dict[str, int]] = {eid: {} for eid in event_ids}
    if not event_ids:
        return counts
    rows = session.execute(
        select(EventRSVP.event_id, EventRSVP.status, func.count(EventRSVP.id))
        .where(EventRSVP.event_id.in_(event_ids))
        .group_by(EventRSVP.event_id, EventRSVP.status)
    ).all()
    for event_id, status, n in rows:
        counts[event_id][status] = n
    return counts


def _detail(
    row: GroupEvent, counts: dict[str, int], user_status: str | None = None,
) -> EventDetail:
    return EventDetail(
        id=row.id,
        group_id=row.group_id,
        creator_id=row.creator_id,
        title=row.title,
        description=row.description,
        start_time=as_utc(row.start_time),
        end_time=as_utc(row.end_time),
        location=row.location,
        location_url=row.location_url,
        recurrence=EventRecurrence(row.recurrence),
        recurrence_end_date=as_utc(row.recurrence_end_date),
        max_capacity=row.max_capacity,
        reminder_24h=bool(row.reminder_24h),
        reminder_1h=bool(row.reminder_1h),
        custom_reminder_minutes=row.custom_reminder_minutes,
        is_cancelled=bool(row.is_cancelled),
        going_count=counts.get(RSVPStatus.GOING.value, 0),
        maybe_count=counts.get(RSVPStatus.MAYBE.value, 0),
        not_going_count=counts.get(RSVPStatus.NOT_GOING.value, 0),
        user_status=RSVPStatus(user_status) if user_status else None,
    )


# ---------------------------------------------------------------------------
# Store functions (sync — run via call_store)
# ---------------------------------------------------------------------------
def _user_status(session: Session, event_id: str, user_id: str) -> str | None:
    return session.scalar(
        select(EventRSVP.status).where(
            EventRSVP.event_id == event_id, EventRSVP.user_id == user_id,
        )
    )


def _notify(session: Session, kind: ChangeKind, row: GroupEvent, user_id: str | None = None) -> None:
    notify_change(
        session, ChangeEvent(kind=kind, group_id=row.group_id, event_id=row.id, user_id=user_id),
    )


def _insert_event(
    engine: Engine, fields: dict[str, Any], auto_rsvp: bool, now: datetime,
) -> EventDetail:
    with get_session(engine) as session:
        row = GroupEvent(**fields)
        session.add(row)
        session.flush()
        status = None
        if auto_rsvp:
            session.add(EventRSVP(
                event_id=row.id, user_id=row.creator_id, status=RSVPStatus.GOING.value,
                created_at=now, updated_at=now,
            ))
            status = RSVPStatus.GOING.value
        session.flush()
        _notify(session, ChangeKind.EVENT, row)
        return _detail(row, _status_counts(session, [row.id])[row.id], status)


def _load_event(engine: Engine, event_id: str, user_id: str) -> EventDetail:
    with get_session(engine) as session:
        row = session.get(GroupEvent, event_id)
        if row is None:
            raise NotFound("event_not_found")
        counts = _status_counts(session, [event_id])[event_id]
        return _detail(row, counts, _user_status(session, event_id, user_id))


def _list_upcoming(engine: Engine, group_id: str, user_id: str, now: datetime) -> list[EventDetail]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(GroupEvent)
            .where(
                GroupEvent.group_id == group_id,
                GroupEvent.is_cancelled.is_(False),
                GroupEvent.start_time >= now,
            )
            .order_by(GroupEvent.start_time.asc())
        ).all()
        ids = [row.id for row in rows]
        counts = _status_counts(session, ids)
        mine = dict(
            session.execute(
                select(EventRSVP.event_id, EventRSVP.status).where(
                    EventRSVP.user_id == user_id, EventRSVP.event_id.in_(ids),
                )
            ).all()
        ) if ids else {}
        return [_detail(row, counts[row.id], mine.get(row.id)) for row in rows]


def _upsert_rsvp(
    engine: Engine, event_id: str, user_id: str, status: RSVPStatus, now: datetime,
) -> RSVPEntry:
    """Capacity check and write under a lock on the event row."""
    with get_session(engine) as session:
        event = session.get(GroupEvent, event_id, with_for_update=True)
        if event is None:
            raise NotFound("event_not_found")
        if event.is_cancelled:
            raise ValidationError(
                "event_cancelled", user_message="This event has been cancelled.",
            )

        if status is RSVPStatus.GOING and event.max_capacity is not None:
            others_going = session.scalar(
                select(func.count(EventRSVP.id)).where(
                    EventRSVP.event_id == event_id,
                    EventRSVP.status == RSVPStatus.GOING.value,
                    EventRSVP.user_id != user_id,
                )
            ) or 0
            if others_going >= event.max_capacity:
                raise CapacityExceeded()

        rsvp = session.scalar(
            select(EventRSVP).where(EventRSVP.event_id == event_id, EventRSVP.user_id == user_id)
        )
        if rsvp is None:
            rsvp = EventRSVP(
                event_id=event_id, user_id=user_id, status=status.value,
                created_at=now, updated_at=now,
            )
            session.add(rsvp)
        else:
            rsvp.status = status.value
            rsvp.updated_at = now
        session.flush()
        _notify(session, ChangeKind.RSVP, event, user_id)
        return _entry(rsvp)


def _delete_rsvp(engine: Engine, event_id: str, user_id: str) -> bool:
    with get_session(engine) as session:
        event = session.get(GroupEvent, event_id)
        if event is None:
            raise NotFound("event_not_found")
        result = session.execute(
            delete(EventRSVP).where(EventRSVP.event_id == event_id, EventRSVP.user_id == user_id)
        )
        if result.rowcount:
            _notify(session, ChangeKind.RSVP, event, user_id)
        return bool(result.rowcount)


def _list_rsvps(engine: Engine, event_id: str) -> list[RSVPEntry]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(EventRSVP)
            .where(EventRSVP.event_id == event_id)
            .order_by(EventRSVP.updated_at.asc())
        ).all()
        return [_entry(r) for r in rows]


def _update_event(
    engine: Engine, event_id: str, changes: dict[str, Any], now: datetime,
) -> GroupEvent:
    with get_session(engine) as session:
        row = session.get(GroupEvent, event_id, with_for_update=True)
        if row is None:
            raise NotFound("event_not_found")
        if row.is_cancelled:
            raise ValidationError("event_cancelled")
        capacity = changes.get("max_capacity")
        if capacity is not None:
            going = session.scalar(
                select(func.count(EventRSVP.id)).where(
                    EventRSVP.event_id == event_id,
                    EventRSVP.status == RSVPStatus.GOING.value,
                )
            ) or 0
            if capacity < going:
                raise ValidationError(
                    "capacity_below_attendance",
                    user_message=f"{going} people are already going; capacity cannot be lower.",
                )
        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = now
        _notify(session, ChangeKind.EVENT, row)
        return row


def _cancel_event(engine: Engine, event_id: str, now: datetime) -> bool:
    with get_session(engine) as session:
        row = session.get(GroupEvent, event_id, with_for_update=True)
        if row is None:
            raise NotFound("event_not_found")
        if row.is_cancelled:
            return False
        row.is_cancelled = True
        row.updated_at = now
        _notify(session, ChangeKind.EVENT, row)
        return True


def _delete_event(engine: Engine, event_id: str) -> None:
    with get_session(engine) as session:
        row = session.get(GroupEvent, event_id)
        if row is None:
            raise NotFound("event_not_found")
        session.execute(delete(EventRSVP).where(EventRSVP.event_id == event_id))
        _notify(session, ChangeKind.EVENT, row)
        session.delete(row)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class EventManager:
    """Event and RSVP operations for one client session."""

    def __init__(
        self,
        engine: Engine,
        identity: IdentityProvider,
        *,
        guard: RateGuard | None = None,
        clock: Callable[[], datetime] = _utcnow,
        auto_rsvp_creator: bool = True,
    ) -> None:
        self._engine = engine
        self._identity = identity
        self._guard = guard
        self._clock = clock
        self._auto_rsvp_creator = auto_rsvp_creator
        self._scope = ViewScope()
        self._events: dict[str, EventDetail] = {}

    def cached(self, event_id: str) -> EventDetail | None:
        return self._events.get(event_id)

    async def _event(self, event_id: str) -> EventDetail:
        return self._events.get(event_id) or await self.get(event_id)

    async def _authorise_edit(self, detail: EventDetail) -> ActorContext:
        actor = await self._identity.actor(detail.group_id)
        if actor.user_id != detail.creator_id and not actor.can(PermissionKey.MANAGE_GROUP):
            raise PermissionDenied("not_creator")
        return actor

    async def _refresh(self, event_id: str, token: int) -> None:
        detail = await call_store(_load_event, self._engine, event_id, self._identity.user_id)
        if self._scope.is_current(token):
            self._events[event_id] = detail

    # -------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------
    async def create(self, data: dict[str, Any] | EventCreate) -> EventDetail:
        """Create an event; the creator is RSVPed ``going`` automatically."""
        payload = parse_input(EventCreate, data)
        if payload.creator_id != self._identity.user_id:
            raise PermissionDenied("creator_mismatch")
        actor = await self._identity.actor(payload.group_id)
        actor.require(PermissionKey.CREATE_EVENTS)
        enforce_rate(self._guard, "create_event")

        now = self._clock()
        fields = payload.model_dump()
        fields["recurrence"] = payload.recurrence.value
        fields.update(is_cancelled=False, created_at=now, updated_at=now)
        detail = await call_store(
            _insert_event, self._engine, fields, self._auto_rsvp_creator, now,
        )
        self._events[detail.id] = detail
        logger.info(
            "Event %s created in %s (capacity=%s, recurrence=%s)",
            detail.id, detail.group_id, detail.max_capacity, detail.recurrence,
        )
        return detail

    async def get(self, event_id: str) -> EventDetail:
        """Event with going/maybe/not_going counts and the caller's status."""
        token = self._scope.token()
        detail = await call_store(_load_event, self._engine, event_id, self._identity.user_id)
        if self._scope.is_current(token):
            self._events[event_id] = detail
        return detail

    async def list_upcoming(
        self, group_id: str, now: datetime | None = None,
    ) -> list[EventDetail]:
        """Non-cancelled events starting at or after *now*, soonest first."""
        token = self._scope.token()
        details = await call_store(
            _list_upcoming, self._engine, group_id, self._identity.user_id,
            now or self._clock(),
        )
        if self._scope.is_current(token):
            for detail in details:
                self._events[detail.id] = detail
        return details

    async def update(self, event_id: str, data: dict[str, Any] | EventUpdate) -> EventDetail:
        payload = parse_input(EventUpdate, data)
        detail = await self._event(event_id)
        await self._authorise_edit(detail)
        changes = payload.model_dump(exclude_none=True)
        start = changes.get("start_time", detail.start_time)
        end = changes.get("end_time", detail.end_time)
        if end is not None and end < start:
            raise ValidationError("invalid_end_time", user_message="End time is before start time.")
        if changes:
            token = self._scope.token()
            await call_store(_update_event, self._engine, event_id, changes, self._clock())
            await self._refresh(event_id, token)
        return self._events.get(event_id, detail)

    async def cancel(self, event_id: str) -> EventDetail:
        """Cancel the event.  Terminal; existing RSVPs are kept."""
        detail = await self._event(event_id)
        actor = await self._authorise_edit(detail)
        token = self._scope.token()
        changed = await call_store(_cancel_event, self._engine, event_id, self._clock())
        if changed:
            logger.info("Event %s cancelled by %s", event_id, actor.user_id)
        await self._refresh(event_id, token)
        return self._events.get(event_id, detail)

    async def delete(self, event_id: str) -> None:
        detail = await self._event(event_id)
        actor = await self._authorise_edit(detail)
        await call_store(_delete_event, self._engine, event_id)
        self._events.pop(event_id, None)
        logger.info("Event %s deleted by %s", event_id, actor.user_id)

    # -------------------------------------------------------------------
    # RSVPs
    # -------------------------------------------------------------------
    async def rsvp(
        self, event_id: str, status: RSVPStatus | str, user_id: str | None = None,
    ) -> RSVPEntry:
        """Set the user's RSVP; last write wins.

        Raises :class:`CapacityExceeded` when ``going`` would overfill the
        event and :class:`ValidationError` when it was cancelled.
        """
        user_id = user_id or self._identity.user_id
        if user_id != self._identity.user_id:
            raise PermissionDenied("rsvp_for_other_user")
        try:
            status = RSVPStatus(status)
        except ValueError:
            raise ValidationError("invalid_status") from None

        detail = await self._event(event_id)
        if detail.is_cancelled:
            raise ValidationError("event_cancelled", user_message="This event has been cancelled.")
        actor = await self._identity.actor(detail.group_id)
        if not actor.is_member:
            raise PermissionDenied("not_a_member")
        enforce_rate(self._guard, "rsvp_event")

        async with self._scope.lock_for(("event", event_id)):
            token = self._scope.token()
            try:
                entry = await call_store(
                    _upsert_rsvp, self._engine, event_id, user_id, status, self._clock(),
                )
            except CapacityExceeded:
                logger.info("RSVP going for %s rejected: event %s full", user_id, event_id)
                raise
            await self._refresh(event_id, token)
        return entry

    async def remove_rsvp(self, event_id: str, user_id: str | None = None) -> bool:
        """Withdraw the user's RSVP.  Returns False if there was none."""
        user_id = user_id or self._identity.user_id
        if user_id != self._identity.user_id:
            raise PermissionDenied("rsvp_for_other_user")
        async with self._scope.lock_for(("event", event_id)):
            token = self._scope.token()
            removed = await call_store(_delete_rsvp, self._engine, event_id, user_id)
            await self._refresh(event_id, token)
        return removed

    async def rsvp_list(self, event_id: str) -> dict[RSVPStatus, list[RSVPEntry]]:
        """All RSVPs grouped by status (every status key present)."""
        grouped: dict[RSVPStatus, list[RSVPEntry]] = {status: [] for status in RSVPStatus}
        for entry in await call_store(_list_rsvps, self._engine, event_id):
            grouped[entry.status].append(entry)
        return grouped

    # -------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------
    async def on_change(self, event: ChangeEvent) -> None:
        """Refresh the cached event named by a push event, if cached."""
        if event.event_id is None or event.event_id not in self._events:
            return
        token = self._scope.token()
        try:
            await self._refresh(event.event_id, token)
        except NotFound:
            if self._scope.is_current(token):
                self._events.pop(event.event_id, None)

    def close(self) -> None:
        self._scope.close()
        self._events.clear()
