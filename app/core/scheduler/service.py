"""
Maintenance Scheduler

APScheduler wrapper running periodic housekeeping, currently the purge of
expired idempotency records.
"""

import logging
from datetime import timedelta
from typing import Optional

from apscheduler.events import (
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    JobExecutionEvent,
)
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.exceptions import RedisError

from app.core.idempotency.reaper import purge_expired_records
from app.core.idempotency.store import IdempotencyStore
from app.core.scheduler.distributed_lock import DistributedLockManager

logger = logging.getLogger(__name__)

PURGE_JOB_ID = "purge_expired_idempotency_records"
PURGE_LOCK_NAME = "idempotency:purge"


class MaintenanceScheduler:
    """
    APScheduler service for periodic maintenance jobs.

    When a lock manager is given, each purge run first takes a non-blocking
    Redis lock so that only one instance purges per interval. If Redis is
    unreachable the purge runs anyway.
    """

    def __init__(
        self,
        store: IdempotencyStore,
        retention: timedelta,
        interval_minutes: int = 60,
        lock_manager: Optional[DistributedLockManager] = None,
        lock_ttl: int = 300,
    ):
        self.store = store
        self.retention = retention
        self.interval_minutes = interval_minutes
        self.lock_manager = lock_manager
        self.lock_ttl = lock_ttl
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._started = False

    @property
    def scheduler(self) -> AsyncIOScheduler:
        """Get scheduler instance, creating if needed."""
        if self._scheduler is None:
            self._scheduler = self._create_scheduler()
        return self._scheduler

    @property
    def running(self) -> bool:
        return self._started

    def _create_scheduler(self) -> AsyncIOScheduler:
        """Create and configure APScheduler."""
        scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60,
            },
            timezone="UTC",
        )

        scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED)
        scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)

        return scheduler

    def _on_job_executed(self, event: JobExecutionEvent) -> None:
        logger.debug(f"Job {event.job_id} executed successfully")

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        logger.error(
            f"Job {event.job_id} failed with exception: {event.exception}",
            exc_info=event.exception,
        )

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        logger.warning(f"Job {event.job_id} missed scheduled run time")

    async def run_purge(self) -> Optional[int]:
        """
        Purge expired idempotency records once.

        Returns:
            Number of deleted records, or None if another instance holds the lock
        """
        if self.lock_manager is None:
            return await purge_expired_records(self.store, self.retention)

        try:
            acquired = await self.lock_manager.acquire(PURGE_LOCK_NAME, self.lock_ttl)
        except RedisError as e:
            logger.warning(f"Failed to acquire purge lock: {e}, proceeding with purge")
            return await purge_expired_records(self.store, self.retention)

        if not acquired:
            logger.info("Skipping idempotency purge (lock held by another instance)")
            return None

        try:
            return await purge_expired_records(self.store, self.retention)
        finally:
            try:
                await self.lock_manager.release(PURGE_LOCK_NAME)
            except RedisError as e:
                logger.warning(f"Failed to release purge lock: {e}")

    async def start(self) -> None:
        """Register maintenance jobs and start the scheduler."""
        if self._started:
            logger.warning("Scheduler already started")
            return

        self.scheduler.add_job(
            self.run_purge,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=PURGE_JOB_ID,
            name="Purge expired idempotency records",
            replace_existing=True,
        )
        self.scheduler.start()
        self._started = True
        logger.info("Maintenance scheduler started")

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler and release the lock manager."""
        if not self._started:
            return

        self.scheduler.shutdown(wait=wait)
        self._started = False

        if self.lock_manager is not None:
            await self.lock_manager.close()

        logger.info("Maintenance scheduler stopped")
