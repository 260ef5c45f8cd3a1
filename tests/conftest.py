"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import Engine, create_engine

# ---------------------------------------------------------------------------
# Make JSONB columns work in SQLite for testing.
# SQLite doesn't support JSONB natively, but SQLAlchemy's JSON type works.
# We register a custom type compiler so SQLite renders JSONB as TEXT.
# ---------------------------------------------------------------------------
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import Session

from congregate.database.models import (
    Base,
    CustomRoleRow,
    Group,
    GroupMember,
    GroupMessage,
)
from congregate.engine.permissions import RolePermissions
from congregate.services.identity import StoreIdentity

_jsonb_sqlite_registered = False


def _register_jsonb_sqlite_compat():
    """Register SQLite compilation for PG JSONB type (idempotent)."""
    global _jsonb_sqlite_registered
    if _jsonb_sqlite_registered:
        return
    from sqlalchemy.ext.compiler import compiles

    @compiles(PG_JSONB, "sqlite")
    def _compile_jsonb_as_text(type_, compiler, **kw):
        return "TEXT"

    _jsonb_sqlite_registered = True


_register_jsonb_sqlite_compat()


GROUP_ID = "g-main"
YOUTH_GROUP_ID = "g-youth"
STRIPPED_MOD_ROLE_ID = "cr-greeter"

# user id → stored role string in the main group
MAIN_MEMBERS: dict[str, str] = {
    "u-pastor": "pastor",
    "u-admin": "admin",
    "u-mod": "moderator",
    "u-mod2": "moderator",
    "u-member": "member",
    "u-member2": "member",
    "u-member3": "member",
    "u-visitor": "visitor",
    "u-leader": "leader",
}


@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Congregate tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in ``run_db``).
    """
    from sqlalchemy.pool import StaticPool

    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture
def db_session(db_engine: Engine):
    """Provide a transactional session that rolls back after each test."""
    with Session(db_engine) as session:
        yield session
        session.rollback()


class FakeClock:
    """Settable UTC clock handed to managers in place of ``datetime.now``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def community(db_engine: Engine) -> SimpleNamespace:
    """Two groups with a member of every role.

    * ``g-main``: everyone in :data:`MAIN_MEMBERS`, plus ``u-mod2`` holding
      a custom role that is a moderator's set minus ``pin_messages``.
    * ``g-youth``: ``u-pastor`` as pastor and ``u-member`` as member.
    * Messages ``m-1`` and ``m-2`` in ``g-main``; ``m-youth`` in ``g-youth``.
    """
    stripped = RolePermissions(
        delete_messages=True,
        create_events=True,
        moderate_content=True,
        mute_members=True,
        send_messages=True,
        react=True,
        view_members=True,
    )
    with Session(db_engine) as session:
        session.add_all([
            Group(id=GROUP_ID, name="Grace Fellowship"),
            Group(id=YOUTH_GROUP_ID, name="Youth Night"),
        ])
        session.flush()
        session.add(CustomRoleRow(
            id=STRIPPED_MOD_ROLE_ID, group_id=GROUP_ID, name="Greeter",
            permissions=stripped.to_dict(),
        ))
        session.flush()
        for user_id, role in MAIN_MEMBERS.items():
            session.add(GroupMember(
                group_id=GROUP_ID, user_id=user_id, role=role,
                custom_role_id=STRIPPED_MOD_ROLE_ID if user_id == "u-mod2" else None,
            ))
        session.add_all([
            GroupMember(group_id=YOUTH_GROUP_ID, user_id="u-pastor", role="pastor"),
            GroupMember(group_id=YOUTH_GROUP_ID, user_id="u-member", role="member"),
            GroupMessage(id="m-1", group_id=GROUP_ID, sender_id="u-member", content="Prayer list"),
            GroupMessage(id="m-2", group_id=GROUP_ID, sender_id="u-member2", content="Potluck!"),
            GroupMessage(
                id="m-youth", group_id=YOUTH_GROUP_ID, sender_id="u-member", content="Hi",
            ),
        ])
        session.commit()

    return SimpleNamespace(
        engine=db_engine,
        group_id=GROUP_ID,
        youth_group_id=YOUTH_GROUP_ID,
        stripped_role_id=STRIPPED_MOD_ROLE_ID,
    )


@pytest.fixture
def identity_for(db_engine: Engine):
    """Factory: ``identity_for("u-pastor")`` → store-backed identity."""

    def _make(user_id: str) -> StoreIdentity:
        return StoreIdentity(db_engine, user_id)

    return _make


@pytest.fixture
def inline_store():
    """Run store functions on the loop thread instead of a worker thread.

    Concurrent coroutines then interleave only at ``await`` points, which
    keeps a single shared SQLite connection consistent under
    ``asyncio.gather``.
    """

    async def _inline(func, *args, **kwargs):
        return func(*args, **kwargs)

    with patch("congregate.services.errors.run_db", _inline):
        yield
