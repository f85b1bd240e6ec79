"""Scheduler for the periodic workspace and cache sweep."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import get_cleanup_config
from .workspace import cleanup_stale_workspaces

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """
    Manages the scheduled sweep using APScheduler.

    Each run removes workspaces abandoned by crashed operations and, when a
    purge callable is given, expired blobs of the local cache store.

    Lifecycle:
    - start(): Initialize scheduler and add the sweep job
    - stop(): Gracefully shutdown scheduler
    """

    def __init__(self, purge_cache: Callable[[], dict[str, Any]] | None = None):
        self.scheduler = AsyncIOScheduler()
        self.purge_cache = purge_cache
        self._job_id = "cleanup_stale_workspaces"

    async def start(self):
        """Start the scheduler with current config."""
        config = get_cleanup_config()

        if not config["enabled"]:
            logger.info("Cleanup scheduler disabled in config")
            return

        schedule = config["schedule"]
        try:
            trigger = CronTrigger.from_crontab(schedule)
        except ValueError as e:
            logger.error(f"Invalid cron expression '{schedule}': {e}")
            return

        self.scheduler.add_job(
            self._run_cleanup,
            trigger=trigger,
            id=self._job_id,
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()

        job = self.scheduler.get_job(self._job_id)
        if job:
            logger.info(f"Cleanup scheduler started, next run: {job.next_run_time}")
        else:
            logger.warning("Cleanup scheduler started but job not found")

    async def _run_cleanup(self):
        """Execute one sweep (internal wrapper with logging)."""
        config = get_cleanup_config()
        retention_days = config["retention_days"]

        logger.info(f"Starting scheduled cleanup (retention: {retention_days} days)")

        try:
            result = await asyncio.to_thread(cleanup_stale_workspaces, retention_days)
            freed_mb = result["freed_bytes"] / 1024 / 1024
            logger.info(
                f"Workspace cleanup completed: {result['deleted_count']} folders deleted, "
                f"{freed_mb:.2f} MB freed"
            )
            if result["skipped_active"] > 0:
                logger.info(f"Skipped {result['skipped_active']} workspaces still in use")
            for error in result["errors"]:
                logger.warning(f"  - {error['folder']}: {error['error']}")
        except Exception as e:
            logger.error(f"Workspace cleanup failed with exception: {e}", exc_info=True)

        if self.purge_cache is None:
            return
        try:
            purged = await asyncio.to_thread(self.purge_cache)
            logger.info(f"Cache purge completed: {purged['deleted_count']} expired blobs deleted")
        except Exception as e:
            logger.error(f"Cache purge failed with exception: {e}", exc_info=True)

    async def stop(self):
        """Stop the scheduler gracefully."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Cleanup scheduler stopped")
