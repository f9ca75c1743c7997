from __future__ import annotations

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from backend.app.core.settings import CRON_SCHEDULE, CRON_TIMEZONE
from backend.app.services.worker_pool import SearchPool

logger = logging.getLogger(__name__)

DAILY_JOB_ID = "daily-scrape"


def build_scheduler(
    pool: SearchPool,
    *,
    schedule: str = CRON_SCHEDULE,
    timezone: str = CRON_TIMEZONE,
    scheduler: Optional[AsyncIOScheduler] = None,
) -> AsyncIOScheduler:
    """Register the daily run of every active search on an asyncio scheduler."""
    scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
    scheduler.add_job(
        pool.run_all,
        CronTrigger.from_crontab(schedule, timezone=timezone),
        id=DAILY_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled daily scrape (%s %s)", schedule, timezone)
    return scheduler
