"""
Expired Record Reaper

Lookups already ignore records older than the replay window; the reaper
keeps the table from growing without bound.
"""

from datetime import datetime, timedelta
from typing import Optional

from app.core.idempotency.store import IdempotencyStore
from app.db.base import utcnow
from app.monitoring.logging import get_logger
from app.monitoring.metrics import idempotency_records_purged_counter

logger = get_logger("app.idempotency.reaper")


async def purge_expired_records(
    store: IdempotencyStore,
    retention: timedelta,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete idempotency records older than the retention period.

    Args:
        store: Store to purge
        retention: Age beyond which records are deleted
        now: Reference time, defaults to the current UTC time

    Returns:
        Number of records deleted
    """
    cutoff = (now or utcnow()) - retention
    deleted = await store.purge(cutoff)

    if deleted:
        idempotency_records_purged_counter.inc(deleted)
    logger.info("idempotency_records_purged", deleted=deleted, cutoff=cutoff.isoformat())
    return deleted
