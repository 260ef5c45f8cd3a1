"""
congregate.services.announcement_service — Announcement Lifecycle Manager
===========================================================================

Owns the life of a group broadcast::

    Scheduled ──(scheduled_for ≤ now, or manual publish)──▶ Published ──(delete)──▶ gone

* ``create`` publishes immediately when there is no schedule or the schedule
  already elapsed; a future ``scheduled_for`` stores the row unpublished.
  Cross-group broadcast writes one independent copy per target group with
  ``cross_group_ids`` cleared, so a copy can never fan out again.
* Scheduled rows are published by :func:`publish_due`, swept periodically by
  :class:`~congregate.services.scheduler.AnnouncementScheduler`.  Reads never
  reinterpret ``scheduled_for``; ``is_published`` is the only visibility flag.
* ``mark_read`` / ``acknowledge`` share one receipt row per (announcement,
  user).  The denormalised counters move only when a timestamp is set for
  the first time, under a row lock on the announcement.

The manager keeps a detail cache (``AnnouncementDetail`` per id) that the
receipt calls update optimistically and roll back on failure.  Category is
carried through untouched; ``bypass_mute`` is for the notification layer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, func, select

from congregate.database.engine import get_session
from congregate.database.models import (
    Announcement,
    AnnouncementCategory,
    AnnouncementReceipt,
    as_utc,
)
from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.notifications import notify_change
from congregate.engine.optimistic import ViewScope
from congregate.engine.permissions import PermissionKey
from congregate.services.errors import (
    NotFound,
    PermissionDenied,
    ValidationError,
    call_store,
    enforce_rate,
)
from congregate.services.schemas import AnnouncementCreate, AnnouncementUpdate, parse_input

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
class AnnouncementDetail:
    """Snapshot of one announcement as seen by one user."""

    id: str
    group_id: str
    author_id: str
    title: str
    content: str
    category: AnnouncementCategory
    is_pinned: bool
    is_published: bool
    bypass_mute: bool
    scheduled_for: datetime | None
    cross_group_ids: list[str] | None
    created_at: datetime | None
    updated_at: datetime | None
    read_count: int = 0
    acknowledged_count: int = 0
    user_read: bool = False
    user_acknowledged: bool = False


@dataclass(frozen=True, slots=True)
class Receipt:
    user_id: str
    read_at: datetime
    acknowledged_at: datetime | None = None


def _detail(row: Announcement, receipt: AnnouncementReceipt | None = None) -> AnnouncementDetail:
    return AnnouncementDetail(
        id=row.id,
        group_id=row.group_id,
        author_id=row.author_id,
        title=row.title,
        content=row.content,
        category=AnnouncementCategory(row.category),
        is_pinned=bool(row.is_pinned),
        is_published=bool(row.is_published),
        bypass_mute=bool(row.bypass_mute),
        scheduled_for=as_utc(row.scheduled_for),
        cross_group_ids=list(row.cross_group_ids) if row.cross_group_ids else None,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        read_count=row.read_count or 0,
        acknowledged_count=row.acknowledged_count or 0,
        user_read=receipt is not None,
        user_acknowledged=receipt is not None and receipt.acknowledged_at is not None,
    )


# ---------------------------------------------------------------------------
# Store functions (sync — run via call_store)
# ---------------------------------------------------------------------------
def _receipt_for(session: Session, announcement_id: str, user_id: str) -> AnnouncementReceipt | None:
    return session.scalar(
        select(AnnouncementReceipt).where(
            AnnouncementReceipt.announcement_id == announcement_id,
            AnnouncementReceipt.user_id == user_id,
        )
    )


def _notify(session: Session, kind: ChangeKind, row: Announcement, user_id: str | None = None) -> None:
    notify_change(
        session,
        ChangeEvent(kind=kind, group_id=row.group_id, announcement_id=row.id, user_id=user_id),
    )


def _insert_announcements(
    engine: Engine, fields: dict[str, Any], targets: list[str],
) -> list[AnnouncementDetail]:
    """Insert the announcement plus one copy per target group, atomically."""
    with get_session(engine) as session:
        rows = [Announcement(**fields)]
        for group_id in targets:
            rows.append(Announcement(**{**fields, "group_id": group_id, "cross_group_ids": None}))
        session.add_all(rows)
        session.flush()
        for row in rows:
            _notify(session, ChangeKind.ANNOUNCEMENT, row)
        return [_detail(row) for row in rows]


def _load_detail(engine: Engine, announcement_id: str, user_id: str) -> AnnouncementDetail:
    with get_session(engine) as session:
        row = session.get(Announcement, announcement_id)
        if row is None:
            raise NotFound("announcement_not_found")
        return _detail(row, _receipt_for(session, announcement_id, user_id))


def _list_published(
    engine: Engine, group_id: str, user_id: str, limit: int,
) -> list[AnnouncementDetail]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(Announcement)
            .where(Announcement.group_id == group_id, Announcement.is_published.is_(True))
            .order_by(Announcement.is_pinned.desc(), Announcement.created_at.desc())
            .limit(limit)
        ).all()
        if not rows:
            return []
        receipts = {
            r.announcement_id: r
            for r in session.scalars(
                select(AnnouncementReceipt).where(
                    AnnouncementReceipt.user_id == user_id,
                    AnnouncementReceipt.announcement_id.in_([row.id for row in rows]),
                )
            )
        }
        return [_detail(row, receipts.get(row.id)) for row in rows]


def _list_scheduled(engine: Engine, group_id: str) -> list[AnnouncementDetail]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(Announcement)
            .where(Announcement.group_id == group_id, Announcement.is_published.is_(False))
            .order_by(Announcement.scheduled_for.asc())
        ).all()
        return [_detail(row) for row in rows]


def _publish(engine: Engine, announcement_id: str, now: datetime) -> tuple[AnnouncementDetail, bool]:
    """Set ``is_published``; returns (detail, changed)."""
    with get_session(engine) as session:
        row = session.get(Announcement, announcement_id, with_for_update=True)
        if row is None:
            raise NotFound("announcement_not_found")
        if row.is_published:
            return _detail(row), False
        row.is_published = True
        row.updated_at = now
        _notify(session, ChangeKind.ANNOUNCEMENT, row)
        return _detail(row), True


def publish_due(engine: Engine, now: datetime | None = None) -> list[str]:
    """Publish every unpublished announcement whose ``scheduled_for`` elapsed.

    Sync; the scheduler runs it via ``run_db``.  Returns the published ids.
    """
    now = now or _utcnow()
    with get_session(engine) as session:
        rows = session.scalars(
            select(Announcement)
            .where(
                Announcement.is_published.is_(False),
                Announcement.scheduled_for.is_not(None),
                Announcement.scheduled_for <= now,
            )
            .with_for_update(skip_locked=True)
        ).all()
        for row in rows:
            row.is_published = True
            row.updated_at = now
            _notify(session, ChangeKind.ANNOUNCEMENT, row)
        published = [row.id for row in rows]
    if published:
        logger.info("Published %d scheduled announcement(s)", len(published))
    return published


def _record_receipt(
    engine: Engine, announcement_id: str, user_id: str, now: datetime, *, acknowledge: bool,
) -> tuple[AnnouncementDetail, bool]:
    """Create or complete the receipt row; returns (detail, changed).

    Counters move only when ``read_at`` / ``acknowledged_at`` is set for
    the first time.  The announcement row is locked for the duration.
    """
    with get_session(engine) as session:
        row = session.get(Announcement, announcement_id, with_for_update=True)
        if row is None:
            raise NotFound("announcement_not_found")
        if not row.is_published:
            raise ValidationError("announcement_not_published")

        changed = False
        receipt = _receipt_for(session, announcement_id, user_id)
        if receipt is None:
            receipt = AnnouncementReceipt(
                announcement_id=announcement_id, user_id=user_id, read_at=now,
            )
            session.add(receipt)
            row.read_count = (row.read_count or 0) + 1
            changed = True
        if acknowledge and receipt.acknowledged_at is None:
            receipt.acknowledged_at = now
            row.acknowledged_count = (row.acknowledged_count or 0) + 1
            changed = True

        if changed:
            session.flush()
            _notify(session, ChangeKind.RECEIPT, row, user_id)
        return _detail(row, receipt), changed


def _load_receipts(engine: Engine, announcement_id: str) -> list[Receipt]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(AnnouncementReceipt)
            .where(AnnouncementReceipt.announcement_id == announcement_id)
            .order_by(AnnouncementReceipt.read_at.desc())
        ).all()
        return [
            Receipt(
                user_id=r.user_id,
                read_at=as_utc(r.read_at),
                acknowledged_at=as_utc(r.acknowledged_at),
            )
            for r in rows
        ]


def _update(
    engine: Engine, announcement_id: str, changes: dict[str, Any], now: datetime,
) -> AnnouncementDetail:
    with get_session(engine) as session:
        row = session.get(Announcement, announcement_id)
        if row is None:
            raise NotFound("announcement_not_found")
        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = now
        _notify(session, ChangeKind.ANNOUNCEMENT, row)
        return _detail(row)


def _delete(engine: Engine, announcement_id: str) -> None:
    with get_session(engine) as session:
        row = session.get(Announcement, announcement_id)
        if row is None:
            raise NotFound("announcement_not_found")
        session.execute(
            delete(AnnouncementReceipt).where(
                AnnouncementReceipt.announcement_id == announcement_id
            )
        )
        _notify(session, ChangeKind.ANNOUNCEMENT, row)
        session.delete(row)


def _unread_count(engine: Engine, group_id: str, user_id: str) -> int:
    with get_session(engine) as session:
        read_ids = select(AnnouncementReceipt.announcement_id).where(
            AnnouncementReceipt.user_id == user_id
        )
        return session.scalar(
            select(func.count(Announcement.id)).where(
                Announcement.group_id == group_id,
                Announcement.is_published.is_(True),
                Announcement.id.not_in(read_ids),
            )
        ) or 0


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------
class AnnouncementManager:
    """Announcement operations for one client session.

    Usage::

        manager = AnnouncementManager(engine, identity, guard=guard)
        detail = await manager.create({"group_id": gid, "author_id": uid, ...})
        await manager.acknowledge(detail.id)
    """

    def __init__(
        self,
        engine: Engine,
        identity: IdentityProvider,
        *,
        guard: RateGuard | None = None,
        clock: Callable[[], datetime] = _utcnow,
        list_limit: int = 50,
    ) -> None:
        self._engine = engine
        self._identity = identity
        self._guard = guard
        self._clock = clock
        self._list_limit = list_limit
        self._scope = ViewScope()
        self._details: dict[str, AnnouncementDetail] = {}

    # -------------------------------------------------------------------
    # Cache access
    # -------------------------------------------------------------------
    def cached(self, announcement_id: str) -> AnnouncementDetail | None:
        return self._details.get(announcement_id)

    def _remember(self, details: list[AnnouncementDetail]) -> None:
        for detail in details:
            self._details[detail.id] = detail

    async def _authorise_edit(self, detail: AnnouncementDetail) -> ActorContext:
        actor = await self._identity.actor(detail.group_id)
        if actor.user_id != detail.author_id and not actor.can(PermissionKey.MANAGE_GROUP):
            raise PermissionDenied("not_author")
        return actor

    # -------------------------------------------------------------------
    # Create / read
    # -------------------------------------------------------------------
    async def create(self, data: dict[str, Any] | AnnouncementCreate) -> AnnouncementDetail:
        """Create an announcement (and its cross-group copies).

        Returns the primary announcement.  Raises :class:`PermissionDenied`
        unless the author may post in the group and in every target group.
        """
        payload = parse_input(AnnouncementCreate, data)
        if payload.author_id != self._identity.user_id:
            raise PermissionDenied("author_mismatch")
        actor = await self._identity.actor(payload.group_id)
        actor.require(PermissionKey.POST_ANNOUNCEMENTS)

        targets = [gid for gid in payload.cross_group_ids or () if gid != payload.group_id]
        for group_id in targets:
            target_actor = await self._identity.actor(group_id)
            target_actor.require(PermissionKey.POST_ANNOUNCEMENTS)

        enforce_rate(self._guard, "post_announcement")

        now = self._clock()
        scheduled = payload.scheduled_for is not None and payload.scheduled_for > now
        fields = {
            "group_id": payload.group_id,
            "author_id": payload.author_id,
            "title": payload.title,
            "content": payload.content,
            "category": payload.category.value,
            "is_pinned": payload.is_pinned,
            "is_published": not scheduled,
            "bypass_mute": payload.bypass_mute,
            "scheduled_for": payload.scheduled_for,
            "cross_group_ids": targets or None,
            "created_at": now,
            "updated_at": now,
        }
        details = await call_store(_insert_announcements, self._engine, fields, targets)
        self._remember(details)
        primary = details[0]
        logger.info(
            "Announcement %s created in %s (%s, %s, %d cross-post(s))",
            primary.id, primary.group_id, primary.category,
            "published" if primary.is_published else "scheduled", len(targets),
        )
        return primary

    async def get(self, announcement_id: str) -> AnnouncementDetail:
        """Detail view with counters and the caller's own read/ack flags."""
        token = self._scope.token()
        detail = await call_store(
            _load_detail, self._engine, announcement_id, self._identity.user_id,
        )
        if not detail.is_published:
            actor = await self._identity.actor(detail.group_id)
            if not actor.can(PermissionKey.POST_ANNOUNCEMENTS):
                raise NotFound("announcement_not_found")
        if self._scope.is_current(token):
            self._details[detail.id] = detail
        return detail

    async def list_published(self, group_id: str) -> list[AnnouncementDetail]:
        """Published announcements, pinned first then newest first."""
        token = self._scope.token()
        details = await call_store(
            _list_published, self._engine, group_id, self._identity.user_id, self._list_limit,
        )
        if self._scope.is_current(token):
            self._remember(details)
        return details

    async def list_scheduled(self, group_id: str) -> list[AnnouncementDetail]:
        """Unpublished announcements, soonest first.  Posters only."""
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.POST_ANNOUNCEMENTS)
        return await call_store(_list_scheduled, self._engine, group_id)

    async def unread_count(self, group_id: str) -> int:
        return await call_store(_unread_count, self._engine, group_id, self._identity.user_id)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------
    async def publish(self, announcement_id: str) -> AnnouncementDetail:
        """Publish now.  Publishing an already-published row is a no-op."""
        detail = self._details.get(announcement_id) or await self.get(announcement_id)
        actor = await self._identity.actor(detail.group_id)
        actor.require(PermissionKey.POST_ANNOUNCEMENTS)
        published, changed = await call_store(
            _publish, self._engine, announcement_id, self._clock(),
        )
        if changed:
            logger.info("Announcement %s published by %s", announcement_id, actor.user_id)
        self._details[announcement_id] = replace(
            published,
            user_read=detail.user_read,
            user_acknowledged=detail.user_acknowledged,
        )
        return self._details[announcement_id]

    async def publish_due(self, now: datetime | None = None) -> list[str]:
        """Publish every elapsed scheduled announcement (system sweep)."""
        return await call_store(publish_due, self._engine, now or self._clock())

    async def update(
        self, announcement_id: str, data: dict[str, Any] | AnnouncementUpdate,
    ) -> AnnouncementDetail:
        """Edit title/content/category/pin/bypass flag.  Author or group manager."""
        payload = parse_input(AnnouncementUpdate, data)
        detail = self._details.get(announcement_id) or await self.get(announcement_id)
        await self._authorise_edit(detail)
        changes = payload.model_dump(exclude_none=True)
        if "category" in changes:
            changes["category"] = AnnouncementCategory(changes["category"]).value
        if not changes:
            return detail
        updated = await call_store(_update, self._engine, announcement_id, changes, self._clock())
        self._details[announcement_id] = replace(
            updated,
            user_read=detail.user_read,
            user_acknowledged=detail.user_acknowledged,
        )
        return self._details[announcement_id]

    async def delete(self, announcement_id: str) -> None:
        """Hard delete with receipts.  Author or ``manage_group`` holder."""
        detail = self._details.get(announcement_id) or await self.get(announcement_id)
        actor = await self._authorise_edit(detail)
        await call_store(_delete, self._engine, announcement_id)
        self._details.pop(announcement_id, None)
        logger.info("Announcement %s deleted by %s", announcement_id, actor.user_id)

    # -------------------------------------------------------------------
    # Receipts
    # -------------------------------------------------------------------
    async def mark_read(self, announcement_id: str, user_id: str | None = None) -> bool:
        """Record that the user opened the announcement.

        Returns True when a receipt was created, False when one existed.
        """
        return await self._receipt(announcement_id, user_id, acknowledge=False)

    async def acknowledge(self, announcement_id: str, user_id: str | None = None) -> bool:
        """Record an explicit acknowledgment (also counts as a read).

        Returns True when the acknowledgment was new.
        """
        return await self._receipt(announcement_id, user_id, acknowledge=True)

    async def _receipt(self, announcement_id: str, user_id: str | None, *, acknowledge: bool) -> bool:
        user_id = user_id or self._identity.user_id
        if user_id != self._identity.user_id:
            raise PermissionDenied("receipt_for_other_user")

        action = "acknowledge" if acknowledge else "mark_read"
        async with self._scope.lock_for(("announcement", announcement_id)):
            before = self._details.get(announcement_id)
            mutation = None
            if before is not None:
                after = before
                if not before.user_read:
                    after = replace(after, user_read=True, read_count=after.read_count + 1)
                if acknowledge and not before.user_acknowledged:
                    after = replace(
                        after,
                        user_acknowledged=True,
                        acknowledged_count=after.acknowledged_count + 1,
                    )
                if after is not before:
                    self._details[announcement_id] = after

                    def _undo() -> None:
                        self._details[announcement_id] = before

                    mutation = self._scope.begin(announcement_id, action, _undo)

            token = self._scope.token()
            try:
                detail, changed = await call_store(
                    _record_receipt, self._engine, announcement_id, user_id, self._clock(),
                    acknowledge=acknowledge,
                )
            except BaseException as exc:
                if mutation is not None:
                    mutation.rollback(exc)
                    self._scope.settle(mutation)
                if isinstance(exc, NotFound):
                    self._details.pop(announcement_id, None)
                raise

            if mutation is not None:
                mutation.commit()
                self._scope.settle(mutation)
            if self._scope.is_current(token):
                self._details[announcement_id] = detail
            return changed

    async def receipts(self, announcement_id: str) -> list[Receipt]:
        """Who read / acknowledged, most recent read first.

        Visible to the author and to holders of ``post_announcements``.
        """
        detail = self._details.get(announcement_id) or await self.get(announcement_id)
        actor = await self._identity.actor(detail.group_id)
        if actor.user_id != detail.author_id and not actor.can(PermissionKey.POST_ANNOUNCEMENTS):
            raise PermissionDenied("missing_post_announcements")
        return await call_store(_load_receipts, self._engine, announcement_id)

    # -------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------
    async def on_change(self, event: ChangeEvent) -> None:
        """Refresh the cached detail named by a push event, if cached."""
        announcement_id = event.announcement_id
        if announcement_id is None or announcement_id not in self._details:
            return
        token = self._scope.token()
        try:
            detail = await call_store(
                _load_detail, self._engine, announcement_id, self._identity.user_id,
            )
        except NotFound:
            if self._scope.is_current(token):
                self._details.pop(announcement_id, None)
            return
        if not self._scope.is_current(token) or self._scope.pending(announcement_id):
            logger.debug("Dropped stale announcement refresh for %s", announcement_id)
            return
        self._details[announcement_id] = detail

    def close(self) -> None:
        """Drop the cache; results still in flight are discarded."""
        self._scope.close()
        self._details.clear()
