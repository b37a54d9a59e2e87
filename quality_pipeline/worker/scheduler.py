"""APScheduler job definitions for the quality pipeline."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from quality_pipeline.config import settings
from quality_pipeline.exceptions import RunInProgressError
from quality_pipeline.worker.orchestrator import PipelineOrchestrator, pipeline_orchestrator

logger = logging.getLogger(__name__)


async def scheduled_operation(operation: str, orchestrator: PipelineOrchestrator | None = None):
    """
    Run a pipeline operation from the scheduler.

    A run already holding the lock is not an error for scheduled jobs; the
    job is skipped and picked up on the next tick.
    """
    orchestrator = orchestrator or pipeline_orchestrator
    try:
        summary = await orchestrator.run_operation(operation, trigger="scheduled")
    except RunInProgressError as e:
        logger.info(f"Skipping scheduled {operation}: {e}")
        return None
    logger.info(f"Scheduled {operation} finished: {summary}")
    return summary


def setup_scheduler(orchestrator: PipelineOrchestrator | None = None) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - score-batch every settings.score_batch_interval_minutes
    - dedup-sweep nightly at settings.dedup_sweep_hour (UTC)
    - corpus refresh daily at settings.corpus_refresh_hour (UTC)

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    interval = max(1, int(settings.score_batch_interval_minutes))

    scheduler.add_job(
        scheduled_operation,
        IntervalTrigger(minutes=interval),
        args=["score-batch", orchestrator],
        id="score_batch",
        name="Score unscored reports",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    scheduler.add_job(
        scheduled_operation,
        CronTrigger(hour=settings.corpus_refresh_hour, minute=0),
        args=["refresh-corpus", orchestrator],
        id="corpus_refresh",
        name="Rebuild corpus statistics snapshot",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        scheduled_operation,
        CronTrigger(hour=settings.dedup_sweep_hour, minute=0),
        args=["dedup-sweep", orchestrator],
        id="dedup_sweep",
        name="Nightly duplicate sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: score-batch every {interval}m, "
        f"corpus refresh at {settings.corpus_refresh_hour:02d}:00 UTC, "
        f"dedup sweep at {settings.dedup_sweep_hour:02d}:00 UTC"
    )
    return scheduler
