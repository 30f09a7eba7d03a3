import logging
import asyncio
import signal
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import Settings, settings as default_settings
from replication.runner import ReplicationRunner

logger = logging.getLogger(__name__)

JOB_ID = "replication_cycle"


class ReplicationScheduler:
    def __init__(self, runner: ReplicationRunner, config: Optional[Settings] = None):
        self.runner = runner
        self.config = config or default_settings
        self.scheduler = AsyncIOScheduler()

    async def run_replication_job(self):
        """Job to run one replication cycle"""
        logger.info("Scheduler: Starting replication cycle")
        summary = await self.runner.run_cycle()
        logger.info(f"Scheduler: Replication cycle finished with status {summary.status.value}")

    def start(self):
        """Start the scheduler with the first cycle due immediately"""
        self.scheduler.add_job(
            self.run_replication_job,
            trigger=IntervalTrigger(minutes=self.config.SYNC_INTERVAL_MINUTES),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now()
        )
        self.scheduler.start()
        logger.info(f"Replication scheduler started (every {self.config.SYNC_INTERVAL_MINUTES} minutes)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Replication scheduler stopped")

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """
        Run cycles on the interval until SIGINT/SIGTERM or stop_event.

        On shutdown no new cycle is scheduled and the in-flight cycle gets
        SHUTDOWN_GRACE_SECONDS to finish.
        """
        stop_event = stop_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Cannot install handler for {sig.name}")

        self.start()
        try:
            await stop_event.wait()
            logger.info("Shutdown requested, waiting for in-flight cycle")

            # Shutting the scheduler down cancels running jobs, so pause first
            self.scheduler.pause()
            if not await self.runner.wait_idle(timeout=self.config.SHUTDOWN_GRACE_SECONDS):
                logger.warning(
                    f"In-flight cycle did not finish within {self.config.SHUTDOWN_GRACE_SECONDS}s"
                )
        finally:
            self.stop()
            for sig in installed:
                loop.remove_signal_handler(sig)
