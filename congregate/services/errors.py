"""
congregate.services.errors — Typed Failures
============================================

Every manager operation either returns a value or raises one of these.  The
UI maps each class to a specific message (``user_message``), e.g. a "Full"
badge for :class:`CapacityExceeded` or a retry button for
:class:`TransientFailure`.

Local failures (:class:`PermissionDenied`, :class:`ValidationError`,
:class:`RateLimited`) are raised before any store call.  Store failures are
translated at the remote-call boundary by :func:`call_store`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from congregate.database.engine import run_db

if TYPE_CHECKING:
    from congregate.engine.rate_guard import RateGuard

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class GovernanceError(Exception):
    """Base class for all engine failures."""

    detail: str = "governance_error"
    user_message: str = "Something went wrong."
    retryable: bool = False

    def __init__(self, detail: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail
        if user_message:
            self.user_message = user_message


class PermissionDenied(GovernanceError):
    """Actor lacks the required permission or rank."""

    detail = "permission_denied"
    user_message = "You don't have permission to do that."


class ValidationError(GovernanceError):
    """Missing required field or out-of-range value."""

    detail = "validation_error"
    user_message = "Please check the form and try again."


class CapacityExceeded(GovernanceError):
    """RSVP rejected because the event is full."""

    detail = "at_capacity"
    user_message = "This event is full."


class NotFound(GovernanceError):
    """Referenced entity no longer exists."""

    detail = "not_found"
    user_message = "That item no longer exists."


class AlreadyExists(GovernanceError):
    """The store's unique constraint rejected a duplicate row."""

    detail = "already_exists"
    user_message = "Already done."


class TransientFailure(GovernanceError):
    """Network / store failure with no semantic meaning; safe to retry."""

    detail = "transient_failure"
    user_message = "Couldn't reach the server. Please try again."
    retryable = True


class RateLimited(GovernanceError):
    """Blocked locally by the rate guard."""

    detail = "rate_limited"
    user_message = "You're doing that too much. Please wait a moment."
    retryable = True

    def __init__(
        self,
        detail: str | None = None,
        *,
        retry_after: int | None = None,
        user_message: str | None = None,
    ) -> None:
        super().__init__(detail, user_message=user_message)
        self.retry_after = retry_after


def enforce_rate(guard: RateGuard | None, action: str) -> None:
    """Consume one *action* attempt from *guard* or raise :class:`RateLimited`."""
    if guard is None:
        return
    decision = guard.consume(action)
    if not decision.allowed:
        raise RateLimited(
            f"rate_limited_{action}",
            retry_after=decision.retry_after,
            user_message=decision.reason,
        )


# ---------------------------------------------------------------------------
# Remote-call boundary
# ---------------------------------------------------------------------------
async def call_store(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a sync store function via :func:`run_db` and translate failures.

    - :class:`GovernanceError` raised by the store function passes through.
    - ``IntegrityError`` (unique constraint) → :class:`AlreadyExists`.
    - Any other driver / SQLAlchemy error → :class:`TransientFailure`.
    """
    try:
        return await run_db(func, *args, **kwargs)
    except GovernanceError:
        raise
    except IntegrityError as exc:
        logger.info("Store rejected duplicate in %s: %s", func.__name__, exc.orig)
        raise AlreadyExists() from exc
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Store call %s failed: %s", func.__name__, exc)
        raise TransientFailure() from exc
