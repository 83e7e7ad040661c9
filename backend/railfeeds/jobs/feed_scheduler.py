import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from railfeeds.core.config import Settings
from railfeeds.services.engine import RailEngine

logger = logging.getLogger(__name__)


class FeedScheduler:
    """Periodic housekeeping for the feed engine."""

    def __init__(self, settings: Settings, engine: RailEngine):
        self.settings = settings
        self.engine = engine
        self.scheduler = AsyncIOScheduler()
        self._setup_jobs()

    def _setup_jobs(self):
        """Setup scheduled jobs."""
        # Liveness sampling, retention and session supervision
        self.scheduler.add_job(
            func=self._sample_feeds,
            trigger=IntervalTrigger(seconds=self.settings.feed_stats_interval_seconds),
            id="feed_stats_sample",
            name="Sample feed liveness",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        # CORPUS / SMART reload; next_run_time=None would add the job paused
        startup = (
            {"next_run_time": datetime.now(timezone.utc)}
            if self.settings.reference_load_on_startup
            else {}
        )
        self.scheduler.add_job(
            func=self._refresh_reference_data,
            trigger=IntervalTrigger(hours=self.settings.reference_refresh_interval_hours),
            id="reference_data_refresh",
            name="Refresh CORPUS and SMART reference data",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **startup,
        )

    async def start(self):
        """Start the scheduler."""
        logger.info("Starting feed scheduler")
        self.scheduler.start()

    async def stop(self):
        """Stop the scheduler."""
        if self.scheduler.running:
            logger.info("Stopping feed scheduler")
            self.scheduler.shutdown(wait=False)

    async def _sample_feeds(self):
        rates = self.engine.stats.sample()
        logger.debug("Feed message rates: %s", rates)

        pruned = self.engine.aggregator.prune()
        if pruned:
            logger.info("Pruned %d stale train records", pruned)

        try:
            restarted = await self.engine.aggregator.restart_exhausted()
        except Exception as e:
            logger.error(f"Failed to restart exhausted STOMP sessions: {e}")
        else:
            if restarted:
                logger.info("Restarted STOMP sessions: %s", ", ".join(restarted))

    async def _refresh_reference_data(self):
        logger.info("Starting scheduled reference data refresh")
        try:
            refreshed = await self.engine.refresh_reference_data()
        except Exception as e:
            logger.error(f"Failed to refresh reference data: {e}")
            return
        if refreshed:
            logger.info(
                "Reference data refreshed: %d locations, %d berths",
                len(self.engine.locations),
                len(self.engine.aggregator.berths),
            )

    def get_job_info(self) -> dict:
        """Get information about scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "name": job.name,
                    "next_run": (
                        job.next_run_time.isoformat()
                        if getattr(job, "next_run_time", None)
                        else None
                    ),
                    "trigger": str(job.trigger),
                }
            )

        return {
            "scheduler_running": self.scheduler.running,
            "jobs": jobs,
        }
