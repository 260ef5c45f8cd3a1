"""
congregate.__main__ — Entry point for ``python -m congregate``
===============================================================

Runs the publication worker:

1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables exist.
4. Start the PG LISTEN/NOTIFY change listener.
5. Start the scheduled-announcement sweep.
6. Run the event loop until Ctrl+C.

Run with::

    uv run python -m congregate
"""

from __future__ import annotations

import asyncio
import logging

from dotenv import load_dotenv

from congregate.config import load_config
from congregate.database.engine import create_db_engine, init_db
from congregate.engine.events import ChangeEvent, ChangeKind
from congregate.engine.notifications import ChangeListener
from congregate.services.scheduler import AnnouncementScheduler

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("congregate")


async def _log_announcement(event: ChangeEvent) -> None:
    logger.info("Announcement %s changed in group %s", event.announcement_id, event.group_id)


def main() -> None:
    """Bootstrap and run the publication worker."""

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config()
    logger.info("Config loaded — Community: %s", cfg.community_name)

    # 3. Database.
    engine = create_db_engine()
    init_db(engine)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    # 4. Change listener.
    listener = ChangeListener(engine)
    listener.subscribe(ChangeKind.ANNOUNCEMENT, _log_announcement, loop)
    listener.start(loop)

    # 5. Publication sweep.
    scheduler = AnnouncementScheduler(engine, cfg.publish_interval_seconds)
    scheduler.start(loop)

    # 6. Run (blocks until Ctrl+C or SIGTERM).
    logger.info("Starting Congregate publication worker…")
    try:
        loop.run_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")
    finally:
        scheduler.stop()
        listener.stop()
        loop.close()
        engine.dispose()


if __name__ == "__main__":
    main()
