"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.config import settings
from src.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Daily reduction pass fires at every hour in settings.reduction_cron_hours (UTC);
      the dedup guard lets only the first firing of a date do any work
    - Competitive analysis batches run every settings.analysis_interval_hours
    - Outcome log retention runs daily at settings.housekeeping_cron_hour

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        task_runner.scheduled_reductions,
        CronTrigger(
            hour=settings.reduction_cron_hours,
            minute=settings.reduction_cron_minute,
            timezone="UTC",
        ),
        id="daily_price_reduction",
        name="Daily automated price reduction",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.run_competitive_analysis,
        IntervalTrigger(hours=max(1, settings.analysis_interval_hours)),
        id="competitive_analysis",
        name="Competitive pricing analysis",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        task_runner.purge_attempts,
        CronTrigger(hour=settings.housekeeping_cron_hour, minute=0, timezone="UTC"),
        id="attempt_retention",
        name="Purge old reduction attempts",
        max_instances=1,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: reductions at %s:%02d UTC, analysis every %d hours, "
        "retention purge at %02d:00 UTC (%d days)",
        settings.reduction_cron_hours,
        settings.reduction_cron_minute,
        settings.analysis_interval_hours,
        settings.housekeeping_cron_hour,
        settings.attempt_retention_days,
    )

    return scheduler
