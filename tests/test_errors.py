"""
tests/test_errors.py — Failure translation at the store boundary
=================================================================
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from congregate.engine.local_store import MemoryStore
from congregate.engine.rate_guard import RateGuard, RateLimitRule
from congregate.services.errors import (
    AlreadyExists,
    CapacityExceeded,
    GovernanceError,
    NotFound,
    RateLimited,
    TransientFailure,
    call_store,
    enforce_rate,
)


def run_async(coro):
    return asyncio.get_event_loop_policy().new_event_loop().run_until_complete(coro)


def _returns(value):
    return value


def _raises(exc):
    raise exc


class TestCallStore:
    def test_value_passes_through(self):
        assert run_async(call_store(_returns, 42)) == 42

    def test_governance_error_passes_through(self):
        with pytest.raises(NotFound) as info:
            run_async(call_store(_raises, NotFound("event_not_found")))
        assert info.value.detail == "event_not_found"

    def test_integrity_error_becomes_already_exists(self):
        exc = IntegrityError("INSERT …", {}, Exception("UNIQUE constraint failed"))
        with pytest.raises(AlreadyExists) as info:
            run_async(call_store(_raises, exc))
        assert isinstance(info.value.__cause__, IntegrityError)

    def test_driver_error_becomes_transient(self):
        exc = OperationalError("SELECT 1", {}, Exception("server closed the connection"))
        with pytest.raises(TransientFailure) as info:
            run_async(call_store(_raises, exc))
        assert info.value.retryable

    def test_os_error_becomes_transient(self):
        with pytest.raises(TransientFailure):
            run_async(call_store(_raises, ConnectionResetError()))

    def test_programming_bugs_are_not_masked(self):
        with pytest.raises(KeyError):
            run_async(call_store(_raises, KeyError("oops")))


class TestErrorTypes:
    def test_default_detail_and_message(self):
        err = CapacityExceeded()
        assert err.detail == "at_capacity"
        assert err.user_message == "This event is full."
        assert isinstance(err, GovernanceError)
        assert not err.retryable

    def test_detail_override(self):
        err = NotFound("announcement_not_found", user_message="Gone.")
        assert str(err) == "announcement_not_found"
        assert err.user_message == "Gone."
        assert NotFound.detail == "not_found"


class TestEnforceRate:
    def test_none_guard_is_noop(self):
        enforce_rate(None, "add_reaction")

    def test_raises_with_retry_after(self):
        guard = RateGuard(MemoryStore(), {"pin_message": RateLimitRule(1, 60)})
        enforce_rate(guard, "pin_message")
        with pytest.raises(RateLimited) as info:
            enforce_rate(guard, "pin_message")
        err = info.value
        assert err.detail == "rate_limited_pin_message"
        assert err.retry_after is not None and err.retry_after >= 1
        assert err.user_message.startswith("You're doing that too much.")
        assert err.retryable
