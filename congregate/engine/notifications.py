"""
congregate.engine.notifications — Push Channel via PG LISTEN/NOTIFY
====================================================================

Store writers announce changes with :func:`notify_change` inside their
transaction, so the NOTIFY fires atomically on commit.  Each client process
runs one :class:`ChangeListener` thread that LISTENs on the channel, parses
payloads into :class:`~congregate.engine.events.ChangeEvent` objects and
schedules the registered async callbacks on the client's event loop.

Subscribers are keyed by :class:`~congregate.engine.events.ChangeKind`;
several views may subscribe to the same kind and each receives every event.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import select as _select
import threading
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.orm import Session

from congregate.engine.events import ChangeEvent, ChangeKind

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# The PG channel carrying change events
CHANGE_CHANNEL = "congregate_changes"

ChangeCallback = Callable[[ChangeEvent], Awaitable[None]]


class ChangeListener:
    """Background LISTEN thread + per-kind callback registry.

    Usage:
        listener = ChangeListener(engine)
        listener.subscribe(ChangeKind.REACTION, view.on_change, loop)
        listener.start()
    """

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self._callbacks: dict[ChangeKind, list[ChangeCallback]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

        self._healthy = False
        self._failed = False
        self._thread: threading.Thread | None = None
        self._shutdown_event = threading.Event()

    # -------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------
    def subscribe(
        self,
        kind: ChangeKind,
        callback: ChangeCallback,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> Callable[[], None]:
        """Register *callback* for *kind*; returns an unsubscribe function."""
        with self._lock:
            self._callbacks.setdefault(kind, []).append(callback)
            if loop is not None:
                self._loop = loop
        logger.debug("Subscribed %r to %s", callback, kind)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._callbacks.get(kind, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return _unsubscribe

    def _callbacks_for(self, kind: ChangeKind) -> list[ChangeCallback]:
        with self._lock:
            return list(self._callbacks.get(kind, ()))

    async def publish(self, event: ChangeEvent) -> None:
        """Deliver *event* to local subscribers on the current loop.

        Used for same-process writes and for stores without NOTIFY support.
        A failing subscriber is logged and does not stop the others.
        """
        for callback in self._callbacks_for(event.kind):
            try:
                await callback(event)
            except Exception:
                logger.exception("Change subscriber failed for %s", event.kind)

    def _dispatch(self, raw_payload: str) -> None:
        """Parse a JSON NOTIFY payload and schedule subscribers (listener thread)."""
        try:
            event = ChangeEvent.from_payload(json.loads(raw_payload))
        except (json.JSONDecodeError, TypeError, ValueError, KeyError):
            logger.warning("Invalid change payload: %s", raw_payload)
            return

        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Cannot dispatch %s — no event loop available", event.kind)
            return
        asyncio.run_coroutine_threadsafe(self.publish(event), loop)

    # -------------------------------------------------------------------
    # Listener thread
    # -------------------------------------------------------------------
    @property
    def healthy(self) -> bool:
        """True while the LISTEN thread is connected."""
        return self._healthy and not self._failed

    @property
    def failed(self) -> bool:
        """True once the listener exhausted its reconnect attempts."""
        return self._failed

    def stop(self) -> None:
        """Signal the listener thread to stop and wait for it to exit."""
        self._shutdown_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=5)
            logger.info("Change listener thread stopped")

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start a background thread LISTENing on :data:`CHANGE_CHANNEL`.

        Reconnects with exponential backoff + jitter and gives up after
        ten consecutive failures, after which callers fall back to polling.
        """
        import psycopg2

        if self._engine is None:
            raise RuntimeError("ChangeListener.start() needs an engine")
        if loop is not None:
            self._loop = loop

        max_backoff = 60.0
        base_backoff = 1.0
        max_reconnect_attempts = 10

        def _listen_thread() -> None:
            raw_url = self._engine.url.render_as_string(hide_password=False)
            dsn = raw_url.replace("postgresql+psycopg2://", "postgresql://")
            attempt = 0

            while not self._shutdown_event.is_set():
                conn = None
                try:
                    conn = psycopg2.connect(dsn)
                    conn.set_isolation_level(0)  # autocommit
                    cur = conn.cursor()
                    cur.execute(f"LISTEN {CHANGE_CHANNEL};")
                    logger.info("PG LISTEN started on channel '%s'", CHANGE_CHANNEL)

                    attempt = 0
                    self._healthy = True

                    while not self._shutdown_event.is_set():
                        if _select.select([conn], [], [], 5.0) == ([], [], []):
                            continue
                        conn.poll()
                        while conn.notifies:
                            notify = conn.notifies.pop(0)
                            logger.debug("NOTIFY received: %s", notify.payload)
                            self._dispatch(notify.payload or "")

                except Exception:
                    self._healthy = False
                    attempt += 1

                    if attempt >= max_reconnect_attempts:
                        logger.critical(
                            "PG LISTEN exhausted %d retries. Push reconciliation disabled.",
                            max_reconnect_attempts,
                        )
                        self._failed = True
                        break

                    backoff = min(base_backoff * (2 ** (attempt - 1)), max_backoff)
                    wait = backoff + random.uniform(0, backoff * 0.5)
                    logger.exception(
                        "PG LISTEN connection lost (attempt %d/%d). Reconnecting in %.1fs…",
                        attempt, max_reconnect_attempts, wait,
                    )
                    if self._shutdown_event.wait(timeout=wait):
                        break
                finally:
                    if conn is not None:
                        try:
                            conn.close()
                        except Exception:
                            logger.debug("Error closing LISTEN connection", exc_info=True)

        thread = threading.Thread(target=_listen_thread, daemon=True, name="pg-change-listener")
        self._thread = thread
        thread.start()
        logger.info("Change listener thread started")


# ---------------------------------------------------------------------------
# Writer side
# ---------------------------------------------------------------------------
def notify_change(session: Session, event: ChangeEvent) -> None:
    """Queue a NOTIFY for *event* inside the current transaction.

    PostgreSQL delivers it on commit and drops it on rollback.  On other
    dialects (SQLite in tests) there is no push channel and this is a no-op.
    """
    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    session.execute(
        text("SELECT pg_notify(:channel, :payload)"),
        {"channel": CHANGE_CHANNEL, "payload": json.dumps(event.to_payload(), default=str)},
    )
