"""
congregate.database.engine — Database Connection & Async Helper
================================================================

The managers run on an ``asyncio`` event loop driven by the UI layer, while
SQLAlchemy + psycopg2 are **synchronous**.  Calling the store directly from a
coroutine would freeze every other handler until the query returned.

So every store call goes through :func:`run_db`, which ships a plain sync
function to a worker thread with :func:`asyncio.to_thread` and awaits the
result.  The loop keeps serving input while the call is outstanding, and
each ``await run_db(...)`` is an explicit suspension point.

Usage::

    from congregate.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    rows = await run_db(load_published, engine, group_id)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from congregate.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    Pool sizing suits one client process talking to a hosted Postgres:
    * ``pool_size=5`` / ``max_overflow=10``
    * ``pool_timeout=10`` — fail fast rather than hang the UI
    * ``pool_recycle=3600``

    Raises
    ------
    RuntimeError
        If no URL is given and ``DATABASE_URL`` is not set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    engine = create_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=10,
        pool_recycle=3600,
    )
    logger.info("Database engine created → %s", engine.url.host)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`congregate.database.models`.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is kept for dev/test environments.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine) -> Iterator[Session]:
    """Yield a :class:`Session` that commits on success and rolls back on error.

    ``expire_on_commit=False`` so rows can be handed back to the caller's
    thread after the block exits.
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** store function on a background thread.

    Every store call made by a manager goes through this wrapper::

        result = await run_db(my_sync_db_function, engine, group_id)

    Parameters
    ----------
    func:
        Any sync callable (typically one that opens a session and queries).
    *args, **kwargs:
        Forwarded to *func*.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
