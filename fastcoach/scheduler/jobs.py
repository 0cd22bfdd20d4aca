"""
Housekeeping jobs for the notification engine.

  prune_daily_counts   daily at PRUNE_HOUR:PRUNE_MINUTE local time — drop
                       dailyCount.* entries older than the retention window
  reload_settings      every SETTINGS_REFRESH_MINUTES — pick up rule / quiet
                       hours changes written to the store by another process

APScheduler 3.x (AsyncIOScheduler) is used so jobs run in the same asyncio
event loop as FastAPI, next to the engine's per-type locks.
"""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from fastcoach.core.config import settings
from fastcoach.scheduler.behavioral_scheduler import BehavioralNotificationScheduler

logger = logging.getLogger(__name__)


async def prune_daily_counts(engine: BehavioralNotificationScheduler) -> int:
    removed = await engine.prune()
    logger.info("prune_daily_counts: removed %d stale counters", removed)
    return removed


async def reload_settings(engine: BehavioralNotificationScheduler) -> None:
    await engine.load_settings()


def create_scheduler(engine: BehavioralNotificationScheduler) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler AsyncIOScheduler.
    Call scheduler.start() from the FastAPI lifespan context.
    """
    scheduler = AsyncIOScheduler(timezone=engine.tz)

    scheduler.add_job(
        prune_daily_counts,
        trigger="cron",
        hour=settings.PRUNE_HOUR,
        minute=settings.PRUNE_MINUTE,
        args=[engine],
        id="prune_daily_counts",
        name="Prune stale daily notification counts",
        replace_existing=True,
    )

    scheduler.add_job(
        reload_settings,
        trigger="interval",
        minutes=settings.SETTINGS_REFRESH_MINUTES,
        args=[engine],
        id="reload_settings",
        name="Reload notification settings",
        replace_existing=True,
        misfire_grace_time=60,
    )

    return scheduler
