"""
congregate.engine.optimistic — Two-phase local mutations & view scopes
======================================================================

Every optimistic change to a local cache is tracked as a :class:`Mutation`
that starts ``PENDING`` and ends either ``COMMITTED`` (the store confirmed it)
or ``ROLLED_BACK`` (the store refused it or the call failed).  The rollback
callable restores the cache slice the mutation touched, and nothing else.

:class:`ViewScope` ties a cache to the lifetime of the view showing it:

- per-key :class:`asyncio.Lock` objects serialise same-actor operations on
  one key (one reaction triple, one announcement);
- an epoch token lets slow reconciliation passes notice that the view was
  closed (or reopened) while they were waiting, and drop their result.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

_provisional_ids = itertools.count(1)


PROVISIONAL_PREFIX = "temp-"


def provisional_id() -> str:
    """Return a process-unique placeholder id for an optimistic row."""
    return f"{PROVISIONAL_PREFIX}{next(_provisional_ids)}"


def is_provisional(entity_id: str) -> bool:
    return entity_id.startswith(PROVISIONAL_PREFIX)


class MutationState(enum.StrEnum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(slots=True)
class Mutation:
    """One optimistic change awaiting confirmation.

    ``undo`` must restore the pre-mutation state of the slice identified by
    ``key``.  Transitions out of ``PENDING`` happen exactly once.  When
    ``live`` reports that the owning view was closed after the mutation
    began, rolling back leaves the discarded cache alone.
    """

    key: Hashable
    action: str
    undo: Callable[[], None]
    live: Callable[[], bool] | None = field(default=None, repr=False)
    state: MutationState = MutationState.PENDING
    error: BaseException | None = field(default=None, repr=False)

    def commit(self) -> None:
        if self.state is not MutationState.PENDING:
            raise RuntimeError(f"Mutation {self.action}@{self.key} already {self.state}")
        self.state = MutationState.COMMITTED

    def rollback(self, error: BaseException | None = None) -> None:
        if self.state is not MutationState.PENDING:
            raise RuntimeError(f"Mutation {self.action}@{self.key} already {self.state}")
        if self.live is None or self.live():
            self.undo()
        else:
            logger.debug("View closed; skipping undo of %s on %s", self.action, self.key)
        self.state = MutationState.ROLLED_BACK
        self.error = error
        logger.info("Rolled back %s on %s: %s", self.action, self.key, error)


class ViewScope:
    """Lifetime token + per-key locks for one cache-owning view."""

    def __init__(self) -> None:
        self._epoch = 0
        self._closures = 0
        self._closed = False
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._pending: dict[Hashable, list[Mutation]] = {}

    @property
    def closed(self) -> bool:
        return self._closed

    def token(self) -> int:
        """Capture before a suspension point; validate with :meth:`is_current`."""
        return self._epoch

    def is_current(self, token: int) -> bool:
        return not self._closed and token == self._epoch

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    # -------------------------------------------------------------------
    # In-flight bookkeeping
    # -------------------------------------------------------------------
    def begin(self, key: Hashable, action: str, undo: Callable[[], None]) -> Mutation:
        closures = self._closures
        mutation = Mutation(
            key=key, action=action, undo=undo, live=lambda: self._closures == closures,
        )
        self._pending.setdefault(key, []).append(mutation)
        return mutation

    def settle(self, mutation: Mutation) -> None:
        pending = self._pending.get(mutation.key)
        if not pending:
            return
        try:
            pending.remove(mutation)
        except ValueError:
            return
        if not pending:
            del self._pending[mutation.key]

    def pending(self, key: Hashable) -> list[Mutation]:
        return list(self._pending.get(key, ()))

    # -------------------------------------------------------------------
    # Lifetime
    # -------------------------------------------------------------------
    def reopen(self) -> None:
        """Invalidate outstanding tokens and start a fresh epoch."""
        self._epoch += 1
        self._closed = False

    def close(self) -> None:
        """Invalidate outstanding tokens; later results must be discarded."""
        self._epoch += 1
        self._closures += 1
        self._closed = True
        self._pending.clear()
        self._locks.clear()
