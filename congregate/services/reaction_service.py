"""
congregate.services.reaction_service — Reaction/Pin Synchronizer
=================================================================

Keeps a per-message reaction cache in step with the store.

Toggle protocol for (message ``m``, user ``u``, emoji ``e``):

1. Look up the cached tuple.
2. Present → drop it locally, then delete remotely.  On failure the tuple is
   put back where it was and the error is raised.
3. Absent → add a provisional tuple (``temp-N`` id), then insert remotely.
   On success the provisional id is swapped for the authoritative one; on
   failure the provisional tuple is removed and the error is raised.
4. Reconciliation (push event or poll) re-reads one message's reactions and
   replaces that message's slice only, re-applying any tuple still in flight.

"Already exists" on insert and "not found" on delete mean another device
won the race; both leave the cache in the state the user asked for.

Same-key toggles are serialised with a per-key lock.  :meth:`close` bumps the
view epoch so reconciliation results that arrive afterwards are dropped.

Pins live on the message row.  Only ``pin_messages`` holders may pin/unpin;
pinning twice is a no-op and unpinning never touches message content.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import select

from congregate.database.engine import get_session
from congregate.database.models import GroupMessage, MessageReaction, as_utc
from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.notifications import notify_change
from congregate.engine.optimistic import ViewScope, is_provisional, provisional_id
from congregate.engine.permissions import PermissionKey
from congregate.services.errors import (
    AlreadyExists,
    NotFound,
    ValidationError,
    call_store,
    enforce_rate,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from congregate.engine.rate_guard import RateGuard
    from congregate.services.identity import IdentityProvider

logger = logging.getLogger(__name__)

# (message_id, user_id, emoji)
ReactionKey = tuple[str, str, str]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class ReactionView:
    id: str
    message_id: str
    user_id: str
    emoji: str
    created_at: datetime | None = None

    @property
    def key(self) -> ReactionKey:
        return (self.message_id, self.user_id, self.emoji)

    @property
    def provisional(self) -> bool:
        return is_provisional(self.id)


@dataclass(frozen=True, slots=True)
class PinnedMessage:
    message_id: str
    group_id: str
    sender_id: str
    content: str
    pinned_by: str | None
    pinned_at: datetime | None


def _view(row: MessageReaction) -> ReactionView:
    return ReactionView(
        id=row.id,
        message_id=row.message_id,
        user_id=row.user_id,
        emoji=row.emoji,
        created_at=as_utc(row.created_at),
    )


def _pinned(row: GroupMessage) -> PinnedMessage:
    return PinnedMessage(
        message_id=row.id,
        group_id=row.group_id,
        sender_id=row.sender_id,
        content=row.content,
        pinned_by=row.pinned_by,
        pinned_at=as_utc(row.pinned_at),
    )


# ---------------------------------------------------------------------------
# Store functions (sync — run via call_store)
# ---------------------------------------------------------------------------
def _load_reactions(engine: Engine, message_ids: list[str]) -> dict[str, list[ReactionView]]:
    result: dict[str, list[ReactionView]] = {mid: [] for mid in message_ids}
    if not message_ids:
        return result
    with get_session(engine) as session:
        rows = session.scalars(
            select(MessageReaction)
            .where(MessageReaction.message_id.in_(message_ids))
            .order_by(MessageReaction.created_at.asc(), MessageReaction.id.asc())
        ).all()
        for row in rows:
            result[row.message_id].append(_view(row))
    return result


def _message_group(engine: Engine, message_id: str) -> str:
    with get_session(engine) as session:
        group_id = session.scalar(
            select(GroupMessage.group_id).where(GroupMessage.id == message_id)
        )
        if group_id is None:
            raise NotFound("message_not_found")
        return group_id


def _insert_reaction(
    engine: Engine, message_id: str, user_id: str, emoji: str, now: datetime,
) -> ReactionView:
    with get_session(engine) as session:
        message = session.get(GroupMessage, message_id)
        if message is None:
            raise NotFound("message_not_found")
        row = MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji, created_at=now)
        session.add(row)
        session.flush()
        notify_change(
            session,
            ChangeEvent(
                kind=ChangeKind.REACTION, group_id=message.group_id,
                message_id=message_id, user_id=user_id,
            ),
        )
        return _view(row)


def _find_reaction(engine: Engine, message_id: str, user_id: str, emoji: str) -> ReactionView | None:
    with get_session(engine) as session:
        row = session.scalar(
            select(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        return _view(row) if row is not None else None


def _delete_reaction(engine: Engine, message_id: str, user_id: str, emoji: str) -> None:
    with get_session(engine) as session:
        row = session.scalar(
            select(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        if row is None:
            raise NotFound("reaction_not_found")
        group_id = session.scalar(
            select(GroupMessage.group_id).where(GroupMessage.id == message_id)
        )
        session.delete(row)
        notify_change(
            session,
            ChangeEvent(
                kind=ChangeKind.REACTION, group_id=group_id,
                message_id=message_id, user_id=user_id,
            ),
        )


def _set_pin(
    engine: Engine, message_id: str, user_id: str, now: datetime, *, pinned: bool,
) -> tuple[PinnedMessage, bool]:
    """Pin or unpin; returns (message, changed).  Content is never touched."""
    with get_session(engine) as session:
        message = session.get(GroupMessage, message_id, with_for_update=True)
        if message is None:
            raise NotFound("message_not_found")
        if bool(message.is_pinned) == pinned:
            return _pinned(message), False
        if pinned:
            message.is_pinned = True
            message.pinned_by = user_id
            message.pinned_at = now
        else:
            message.is_pinned = False
            message.pinned_by = None
            message.pinned_at = None
        notify_change(
            session,
            ChangeEvent(
                kind=ChangeKind.PIN, group_id=message.group_id,
                message_id=message_id, user_id=user_id,
            ),
        )
        return _pinned(message), True


def _list_pinned(engine: Engine, group_id: str) -> list[PinnedMessage]:
    with get_session(engine) as session:
        rows = session.scalars(
            select(GroupMessage)
            .where(GroupMessage.group_id == group_id, GroupMessage.is_pinned.is_(True))
            .order_by(GroupMessage.pinned_at.desc())
        ).all()
        return [_pinned(row) for row in rows]


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------
class ReactionSynchronizer:
    """Reaction and pin state for one open chat view.

    Usage::

        sync = ReactionSynchronizer(engine, identity, guard=guard)
        await sync.load(visible_message_ids)
        listener.subscribe(ChangeKind.REACTION, sync.on_change, loop)

        await sync.toggle(message_id, "🙏")
        sync.summary(message_id)        # {"🙏": 3}
        ...
        sync.close()                    # user left the view
    """

    def __init__(
        self,
        engine: Engine,
        identity: IdentityProvider,
        *,
        guard: RateGuard | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._engine = engine
        self._identity = identity
        self._guard = guard
        self._clock = clock
        self._scope = ViewScope()
        self._reactions: dict[str, list[ReactionView]] = {}
        self._message_groups: dict[str, str] = {}
        self._pinned: dict[str, list[PinnedMessage]] = {}
        # Tuples whose remote call is outstanding: provisional view for an
        # add, None for a remove.
        self._inflight: dict[ReactionKey, ReactionView | None] = {}

    # -------------------------------------------------------------------
    # Cache reads
    # -------------------------------------------------------------------
    def reactions(self, message_id: str) -> list[ReactionView]:
        return list(self._reactions.get(message_id, ()))

    def summary(self, message_id: str) -> dict[str, int]:
        """Emoji → count for one message, in first-seen order."""
        return dict(Counter(r.emoji for r in self._reactions.get(message_id, ())))

    def has_reacted(self, message_id: str, emoji: str, user_id: str | None = None) -> bool:
        return self._find(message_id, user_id or self._identity.user_id, emoji) is not None

    def _find(self, message_id: str, user_id: str, emoji: str) -> ReactionView | None:
        for view in self._reactions.get(message_id, ()):
            if view.user_id == user_id and view.emoji == emoji:
                return view
        return None

    # -------------------------------------------------------------------
    # Loading & reconciliation
    # -------------------------------------------------------------------
    async def load(self, message_ids: Iterable[str]) -> None:
        """Fill the cache for *message_ids* (replacing their slices)."""
        await self._replace_slices(list(dict.fromkeys(message_ids)))

    async def reconcile(self, message_id: str) -> bool:
        """Re-read one message's reactions and replace that slice only.

        Returns False when the result was discarded because the view closed
        while the read was outstanding.
        """
        return await self._replace_slices([message_id]) > 0

    async def poll(self) -> int:
        """Reconcile every cached message; returns how many slices were applied."""
        return await self._replace_slices(list(self._reactions))

    async def _replace_slices(self, message_ids: list[str]) -> int:
        if not message_ids:
            return 0
        token = self._scope.token()
        fresh = await call_store(_load_reactions, self._engine, message_ids)
        if not self._scope.is_current(token):
            logger.debug("Discarded reaction reconciliation for %d message(s)", len(message_ids))
            return 0
        for message_id, rows in fresh.items():
            self._reactions[message_id] = self._overlay(message_id, rows)
        return len(fresh)

    def _overlay(self, message_id: str, rows: list[ReactionView]) -> list[ReactionView]:
        """Re-apply in-flight tuples of *message_id* on top of store rows."""
        for (mid, user_id, emoji), view in self._inflight.items():
            if mid != message_id:
                continue
            rows = [r for r in rows if not (r.user_id == user_id and r.emoji == emoji)]
            if view is not None:
                rows.append(view)
        return rows

    async def on_change(self, event: ChangeEvent) -> None:
        """Push-channel callback: reconcile exactly what the event names."""
        if event.kind in (ChangeKind.REACTION, ChangeKind.MESSAGE):
            if event.message_id is not None and event.message_id in self._reactions:
                await self.reconcile(event.message_id)
        elif event.kind is ChangeKind.PIN:
            if event.group_id is not None and event.group_id in self._pinned:
                await self.pinned(event.group_id, refresh=True)

    # -------------------------------------------------------------------
    # Reactions
    # -------------------------------------------------------------------
    async def _group_of(self, message_id: str) -> str:
        group_id = self._message_groups.get(message_id)
        if group_id is None:
            group_id = await call_store(_message_group, self._engine, message_id)
            self._message_groups[message_id] = group_id
        return group_id

    async def _prepare(self, message_id: str, emoji: str) -> tuple[str, str]:
        emoji = (emoji or "").strip()
        if not emoji:
            raise ValidationError("emoji_required")
        group_id = await self._group_of(message_id)
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.REACT)
        return actor.user_id, emoji

    async def toggle(self, message_id: str, emoji: str) -> bool:
        """Flip the current user's *emoji* on *message_id*.

        Returns True if the reaction is now present, False if removed.
        """
        user_id, emoji = await self._prepare(message_id, emoji)
        async with self._scope.lock_for((message_id, user_id, emoji)):
            existing = self._find(message_id, user_id, emoji)
            if existing is not None:
                await self._remove(existing)
                return False
            enforce_rate(self._guard, "add_reaction")
            return await self._add(message_id, user_id, emoji)

    async def add(self, message_id: str, emoji: str) -> bool:
        """Ensure the reaction is present (no-op when it already is)."""
        user_id, emoji = await self._prepare(message_id, emoji)
        async with self._scope.lock_for((message_id, user_id, emoji)):
            if self._find(message_id, user_id, emoji) is not None:
                return True
            enforce_rate(self._guard, "add_reaction")
            return await self._add(message_id, user_id, emoji)

    async def remove(self, message_id: str, emoji: str) -> bool:
        """Ensure the reaction is absent (no-op when it already is)."""
        user_id, emoji = await self._prepare(message_id, emoji)
        async with self._scope.lock_for((message_id, user_id, emoji)):
            existing = self._find(message_id, user_id, emoji)
            if existing is not None:
                await self._remove(existing)
            return False

    async def _add(self, message_id: str, user_id: str, emoji: str) -> bool:
        key: ReactionKey = (message_id, user_id, emoji)
        temp = ReactionView(
            id=provisional_id(), message_id=message_id, user_id=user_id, emoji=emoji,
            created_at=self._clock(),
        )
        self._reactions.setdefault(message_id, []).append(temp)
        self._inflight[key] = temp

        def _undo() -> None:
            self._inflight.pop(key, None)
            cached = self._reactions.get(message_id)
            if cached is not None:
                self._reactions[message_id] = [r for r in cached if r.id != temp.id]

        mutation = self._scope.begin(message_id, "add_reaction", _undo)
        token = self._scope.token()
        try:
            try:
                row = await call_store(
                    _insert_reaction, self._engine, message_id, user_id, emoji, self._clock(),
                )
            except AlreadyExists:
                row = await call_store(_find_reaction, self._engine, message_id, user_id, emoji)
        except BaseException as exc:
            mutation.rollback(exc)
            self._scope.settle(mutation)
            raise

        if row is None:
            # Added and removed elsewhere while we were waiting
            mutation.rollback()
            self._scope.settle(mutation)
            return False

        self._inflight.pop(key, None)
        if self._scope.is_current(token):
            self._swap(message_id, temp.id, row)
        mutation.commit()
        self._scope.settle(mutation)
        return True

    def _swap(self, message_id: str, temp_id: str, row: ReactionView) -> None:
        """Replace the provisional tuple with *row*, keeping one tuple per key."""
        swapped: list[ReactionView] = []
        placed = False
        for view in self._reactions.get(message_id, []):
            if view.id == temp_id or view.key == row.key:
                if not placed:
                    swapped.append(row)
                    placed = True
                continue
            swapped.append(view)
        if not placed:
            swapped.append(row)
        self._reactions[message_id] = swapped

    async def _remove(self, existing: ReactionView) -> None:
        message_id = existing.message_id
        key = existing.key
        cached = self._reactions.get(message_id, [])
        index = cached.index(existing)
        self._reactions[message_id] = [r for r in cached if r is not existing]
        self._inflight[key] = None

        def _undo() -> None:
            self._inflight.pop(key, None)
            current = self._reactions.get(message_id)
            if current is None:
                return
            if not any(r.key == key for r in current):
                current.insert(min(index, len(current)), existing)

        mutation = self._scope.begin(message_id, "remove_reaction", _undo)
        try:
            await call_store(
                _delete_reaction, self._engine, message_id, existing.user_id, existing.emoji,
            )
        except NotFound:
            logger.debug("Reaction %s already removed remotely", key)
        except BaseException as exc:
            mutation.rollback(exc)
            self._scope.settle(mutation)
            raise
        self._inflight.pop(key, None)
        mutation.commit()
        self._scope.settle(mutation)

    # -------------------------------------------------------------------
    # Pins
    # -------------------------------------------------------------------
    async def pin(self, message_id: str) -> PinnedMessage:
        """Pin *message_id*.  Pinning an already-pinned message is a no-op."""
        group_id = await self._group_of(message_id)
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.PIN_MESSAGES)
        enforce_rate(self._guard, "pin_message")
        message, changed = await call_store(
            _set_pin, self._engine, message_id, actor.user_id, self._clock(), pinned=True,
        )
        if changed:
            logger.info("Message %s pinned in %s by %s", message_id, group_id, actor.user_id)
            if group_id in self._pinned:
                await self.pinned(group_id, refresh=True)
        return message

    async def unpin(self, message_id: str) -> PinnedMessage:
        """Remove the pin marker; the message itself is untouched."""
        group_id = await self._group_of(message_id)
        actor = await self._identity.actor(group_id)
        actor.require(PermissionKey.PIN_MESSAGES)
        message, changed = await call_store(
            _set_pin, self._engine, message_id, actor.user_id, self._clock(), pinned=False,
        )
        if changed:
            logger.info("Message %s unpinned in %s by %s", message_id, group_id, actor.user_id)
            if group_id in self._pinned:
                await self.pinned(group_id, refresh=True)
        return message

    async def pinned(self, group_id: str, *, refresh: bool = False) -> list[PinnedMessage]:
        """Pinned messages of *group_id*, most recently pinned first."""
        if not refresh and group_id in self._pinned:
            return list(self._pinned[group_id])
        token = self._scope.token()
        rows = await call_store(_list_pinned, self._engine, group_id)
        if self._scope.is_current(token):
            self._pinned[group_id] = rows
            for row in rows:
                self._message_groups[row.message_id] = row.group_id
        return list(rows)

    async def latest_pin(self, group_id: str) -> PinnedMessage | None:
        """The pin the UI shows prominently."""
        rows = await self.pinned(group_id)
        return rows[0] if rows else None

    # -------------------------------------------------------------------
    # Lifetime
    # -------------------------------------------------------------------
    def close(self) -> None:
        """The view went away; drop caches and discard late results."""
        self._scope.close()
        self._reactions.clear()
        self._pinned.clear()
        self._inflight.clear()

    def reopen(self) -> None:
        self._scope.reopen()
