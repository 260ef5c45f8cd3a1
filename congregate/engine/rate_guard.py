"""
congregate.engine.rate_guard — Sliding-window per-action attempt guard
=======================================================================

Stops a client from hammering the store with repeated actions (reaction
spam, announcement floods) before a remote call is made.  Each action type
has a rule: at most ``max_attempts`` inside ``window_seconds``, and at least
``cooldown_seconds`` between two attempts.

State lives in an injected :class:`~congregate.engine.local_store.LocalStore`
so it survives restarts of the client.  This is a courtesy limit only; the
server keeps its own.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from congregate.engine.local_store import LocalStore

logger = logging.getLogger(__name__)

STORAGE_KEY = "rate_limits"


@dataclass(frozen=True, slots=True)
class RateLimitRule:
    max_attempts: int
    window_seconds: float
    cooldown_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class RateDecision:
    allowed: bool
    retry_after: int | None = None
    reason: str | None = None


DEFAULT_RATE_LIMITS: dict[str, RateLimitRule] = {
    # Messaging
    "send_message": RateLimitRule(10, 60, 5),
    "send_group_message": RateLimitRule(15, 60, 3),
    # Reactions & pins
    "add_reaction": RateLimitRule(30, 60, 0.5),
    "pin_message": RateLimitRule(10, 60, 1),
    # Governance
    "post_announcement": RateLimitRule(5, 600, 10),
    "create_event": RateLimitRule(5, 600, 10),
    "rsvp_event": RateLimitRule(20, 60, 1),
    "change_role": RateLimitRule(20, 300, 1),
    "create_group": RateLimitRule(3, 600, 30),
}


def _plural(n: int) -> str:
    return "" if n == 1 else "s"


class RateGuard:
    """Per-action sliding windows persisted in a :class:`LocalStore`.

    Thread-safe.  Unknown actions are always allowed.
    """

    def __init__(
        self,
        store: LocalStore,
        rules: Mapping[str, RateLimitRule] | None = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._rules = dict(DEFAULT_RATE_LIMITS if rules is None else rules)
        self._clock = clock
        self._lock = threading.Lock()

    def rule_for(self, action: str) -> RateLimitRule | None:
        return self._rules.get(action)

    # -------------------------------------------------------------------
    # Internal state helpers
    # -------------------------------------------------------------------
    def _load(self) -> dict[str, dict]:
        data = self._store.get(STORAGE_KEY, {})
        return data if isinstance(data, dict) else {}

    def _recent(self, entry: dict, rule: RateLimitRule, now: float) -> list[float]:
        return [t for t in entry.get("attempts", []) if now - t < rule.window_seconds]

    def _evaluate(self, entry: dict, rule: RateLimitRule, now: float) -> RateDecision:
        since_last = now - entry.get("last_attempt", 0.0)
        if since_last < rule.cooldown_seconds:
            retry_after = math.ceil(rule.cooldown_seconds - since_last)
            return RateDecision(
                allowed=False,
                retry_after=retry_after,
                reason=(
                    f"Please wait {retry_after} second{_plural(retry_after)} "
                    "before trying again."
                ),
            )

        recent = self._recent(entry, rule, now)
        if len(recent) >= rule.max_attempts:
            retry_after = max(1, math.ceil(rule.window_seconds - (now - min(recent))))
            return RateDecision(
                allowed=False,
                retry_after=retry_after,
                reason=(
                    f"You're doing that too much. Please wait {retry_after} "
                    f"second{_plural(retry_after)}."
                ),
            )
        return RateDecision(allowed=True)

    # -------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------
    def check(self, action: str) -> RateDecision:
        """Evaluate *action* without recording an attempt."""
        rule = self._rules.get(action)
        if rule is None:
            logger.debug("No rate limit configured for action %r", action)
            return RateDecision(allowed=True)
        now = self._clock()
        with self._lock:
            entry = self._load().get(action, {})
            return self._evaluate(entry, rule, now)

    def record(self, action: str) -> None:
        """Record one attempt for *action* (call after an allowed check)."""
        rule = self._rules.get(action)
        if rule is None:
            return
        now = self._clock()
        with self._lock:
            data = self._load()
            entry = data.get(action, {})
            recent = self._recent(entry, rule, now)
            recent.append(now)
            data[action] = {"attempts": recent, "last_attempt": now}
            self._store.set(STORAGE_KEY, data)

    def consume(self, action: str) -> RateDecision:
        """Check and, when allowed, record in one step."""
        rule = self._rules.get(action)
        if rule is None:
            return RateDecision(allowed=True)
        now = self._clock()
        with self._lock:
            data = self._load()
            entry = data.get(action, {})
            decision = self._evaluate(entry, rule, now)
            if decision.allowed:
                recent = self._recent(entry, rule, now)
                recent.append(now)
                data[action] = {"attempts": recent, "last_attempt": now}
                self._store.set(STORAGE_KEY, data)
        if not decision.allowed:
            logger.info("Rate guard blocked %r (retry in %ss)", action, decision.retry_after)
        return decision

    def remaining(self, action: str) -> int | None:
        """Attempts left in the current window; ``None`` for unlimited actions."""
        rule = self._rules.get(action)
        if rule is None:
            return None
        now = self._clock()
        with self._lock:
            entry = self._load().get(action, {})
            return max(0, rule.max_attempts - len(self._recent(entry, rule, now)))

    def clear(self, action: str | None = None) -> None:
        """Forget recorded attempts for *action*, or for every action."""
        with self._lock:
            if action is None:
                self._store.clear(STORAGE_KEY)
                return
            data = self._load()
            if data.pop(action, None) is not None:
                self._store.set(STORAGE_KEY, data)
