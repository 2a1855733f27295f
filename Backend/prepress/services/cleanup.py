import logging
from datetime import datetime, timedelta
from typing import Optional

from prepress.core.config import settings
from prepress.services.adapters import LocalOutputAdapter, OutputAdapter
from prepress.services.job_store import JobStore

logger = logging.getLogger(__name__)


async def cleanup_expired_jobs(
    store: JobStore,
    output_adapter: Optional[OutputAdapter] = None,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
    running_grace: Optional[timedelta] = None,
) -> int:
    """
    Deletes jobs whose TTL has passed: stored files first, then the row
    (findings and fix logs cascade). A failing job is logged and skipped.

    Args:
        store: Job store to sweep.
        output_adapter: Where the job's files live (default: local temp root).
        now: Reference time (default: current UTC time).
        limit: Max jobs per sweep (default: CLEANUP_BATCH_SIZE).
        running_grace: Extra time a running job gets past its TTL
            (default: RUNNING_SWEEP_GRACE_MINUTES).

    Returns:
        Number of jobs deleted.
    """
    output_adapter = output_adapter or LocalOutputAdapter()
    limit = limit or settings.CLEANUP_BATCH_SIZE
    if running_grace is None:
        running_grace = timedelta(minutes=settings.RUNNING_SWEEP_GRACE_MINUTES)

    expired = await store.list_expired(now=now, limit=limit, running_grace=running_grace)
    count = 0

    for job in expired:
        try:
            await output_adapter.delete_job(job.id)
            await store.delete_job(job.id)
            count += 1
        except Exception as e:
            logger.warning(f"Failed to clean up expired job {job.id}: {e}")

    if count > 0:
        logger.info(f"Cleanup: Removed {count} expired prepress jobs.")
    return count
