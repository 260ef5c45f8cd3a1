"""
congregate.services.scheduler — Scheduled announcement publication sweep
=========================================================================

Background task that publishes announcements whose ``scheduled_for`` has
elapsed.  One sweep every ``interval`` seconds; a failed sweep is logged and
the next one tries again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from congregate.database.engine import run_db
from congregate.services.announcement_service import publish_due

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


class AnnouncementScheduler:
    """Periodic :func:`publish_due` runner bound to an event loop."""

    def __init__(
        self,
        engine: Engine,
        interval: float = 30.0,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._engine = engine
        self.interval = interval
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> list[str]:
        """Publish everything due right now; returns the published ids."""
        return await run_db(publish_due, self._engine, self._clock())

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            return

        async def _sweep_loop() -> None:
            while True:
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("Announcement publish sweep failed")
                await asyncio.sleep(self.interval)

        self._task = loop.create_task(_sweep_loop(), name="announcement-publisher")
        logger.info("Announcement scheduler started (every %.0fs)", self.interval)

    def stop(self) -> None:
        """Cancel the sweep task."""
        if self._task:
            self._task.cancel()
            self._task = None
