import logging
from datetime import datetime

from docgen.api.v1.metrics import EXPIRED_LOCKS_REQUEUED
from docgen.domain.errors import JobStoreError
from docgen.domain.models import is_lock_expired
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery, JobStore

logger = logging.getLogger(__name__)

LEASE_EXPIRED_ERROR = "lease expired"


async def requeue_expired_jobs(store: JobStore, now: datetime, max_attempts: int, limit: int = 100) -> int:
    """
    Finds PROCESSING jobs whose lease lapsed and demotes them.
    The lapsed run counts as an attempt; jobs out of budget become FAILED.
    Returns number of jobs recovered.
    """
    expired = await store.query(JobQuery(lock_expired_at=now, limit=limit))

    count = 0
    for job in expired:
        # Re-read: the owner may have finished between the query and now
        try:
            current = await store.get(job.id)
        except JobStoreError as e:
            logger.warning("Skipping expired job %s: %s", job.id, e)
            continue
        if current is None or current.status != JobStatus.PROCESSING or not is_lock_expired(current, now):
            continue

        attempts = current.attempts + 1
        if attempts >= max_attempts:
            fields = {
                "status": JobStatus.FAILED,
                "attempts": attempts,
                "locked_until": None,
                "error": f"max attempts exceeded: {LEASE_EXPIRED_ERROR}",
            }
        else:
            fields = {
                "status": JobStatus.QUEUED,
                "attempts": attempts,
                "locked_until": None,
            }

        if await store.update(current.id, fields):
            count += 1
            logger.warning(
                "Lease on job %s expired at %s; moved to %s (attempt %d)",
                current.id, current.locked_until, fields["status"], attempts,
            )

    if count > 0:
        EXPIRED_LOCKS_REQUEUED.inc(count)

    return count
