import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from core.config import settings
from core.database import async_session_maker
from ingestion.service import run_sync, cleanup_old_runs

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, session_factory=async_session_maker, client_factory=None, interval_minutes=None):
        self.scheduler = AsyncIOScheduler()
        self.SessionLocal = session_factory
        self.client_factory = client_factory
        self.interval_minutes = interval_minutes or settings.SYNC_INTERVAL_MINUTES

    async def run_sync_job(self):
        """Job to synchronize every entity kind"""
        logger.info("Scheduler: Starting sync job")
        try:
            summaries = await run_sync(session_factory=self.SessionLocal, client_factory=self.client_factory)
            for summary in summaries:
                logger.info(f"Scheduler: {summary.entity_kind.value} finished with {summary.status.value}")
        except Exception as e:
            logger.error(f"Scheduler: sync job failed - {e}")

    async def cleanup_job(self):
        """Job to prune old sync runs"""
        try:
            await cleanup_old_runs(self.SessionLocal)
        except Exception as e:
            logger.error(f"Scheduler: cleanup job failed - {e}")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sync_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="sync_job",
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.add_job(
            self.cleanup_job,
            trigger=IntervalTrigger(hours=24),
            id="sync_run_cleanup",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info(f"Sync Scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Sync Scheduler stopped")
