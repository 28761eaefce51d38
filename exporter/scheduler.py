import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from core.config import Settings
from exporter.runner import ExportRunner

logger = logging.getLogger(__name__)


class ExportScheduler:
    """Cron-driven incremental, retry and yesterday jobs on one runner"""

    def __init__(self, runner: ExportRunner, settings: Settings):
        self.runner = runner
        self.settings = settings
        self.scheduler = AsyncIOScheduler()

    async def run_incremental_job(self):
        """Job to run the checkpointed export"""
        logger.info("Scheduler: Starting incremental export job")
        try:
            await self.runner.run_incremental()
        except Exception as e:
            logger.error(f"Scheduler: incremental export job failed - {e}")

    async def run_retry_job(self):
        """Job to re-deliver FAILED rows"""
        logger.info("Scheduler: Starting retry job")
        try:
            await self.runner.retry_failed()
        except Exception as e:
            logger.error(f"Scheduler: retry job failed - {e}")

    async def run_yesterday_job(self):
        """Job to export yesterday's partition"""
        logger.info("Scheduler: Starting yesterday export job")
        try:
            await self.runner.run_yesterday()
        except Exception as e:
            logger.error(f"Scheduler: yesterday export job failed - {e}")

    def register_jobs(self):
        jobs = (
            ("incremental_export", self.run_incremental_job, self.settings.INCREMENT_CRON),
            ("retry_failed", self.run_retry_job, self.settings.RETRY_CRON),
            ("yesterday_export", self.run_yesterday_job, self.settings.YESTERDAY_CRON),
        )
        for job_id, func, cron in jobs:
            self.scheduler.add_job(
                func,
                trigger=CronTrigger.from_crontab(cron),
                id=job_id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"Scheduled job {job_id} with cron '{cron}'")

    def start(self):
        """Start the scheduler"""
        self.register_jobs()
        self.scheduler.start()
        logger.info("Export Scheduler started")

    def stop(self):
        self.runner.request_stop()
        self.scheduler.shutdown(wait=False)
        logger.info("Export Scheduler stopped")
