"""BizArchive - Scheduler Jobs.

APScheduler hourly job that runs the export at the configured minute. A run
never overlaps the previous one, so an integration is never owned by two
pipelines at once.
"""

import asyncio
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from bizarchive.config import settings
from bizarchive.core.logging import get_logger

logger = get_logger("scheduler")

scheduler = AsyncIOScheduler(timezone="UTC")


def start_scheduler(
    export: Callable[[], Awaitable[bool]], enabled: bool | None = None
) -> bool:
    """Configure and start the scheduler. Returns False when disabled."""
    if enabled is None:
        enabled = settings.scheduler_enabled
    if not enabled:
        logger.info("Scheduler disabled via config")
        return False

    async def hourly_export_job():
        logger.info("Scheduled export starting...")
        try:
            ok = await export()
        except Exception:
            logger.exception("Scheduled export failed")
            return
        if ok:
            logger.info("Scheduled export complete")
        else:
            logger.error("Scheduled export finished with failed integrations")

    scheduler.add_job(
        hourly_export_job,
        "cron",
        minute=settings.schedule_minute,
        id="hourly_export",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=600,
    )
    scheduler.start()
    logger.info(f"Scheduler started. Hourly export at minute {settings.schedule_minute} UTC")
    return True


async def stop_scheduler() -> None:
    """Shutdown the scheduler gracefully."""
    if not scheduler.running:
        return
    scheduler.shutdown(wait=False)
    # AsyncIOScheduler applies the shutdown on the next loop iteration.
    await asyncio.sleep(0)
    if scheduler.running:
        logger.warning("Scheduler shutdown requested but still running")
    else:
        logger.info("Scheduler stopped")
