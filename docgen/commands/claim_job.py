import logging
from dataclasses import replace
from datetime import datetime, timedelta

from docgen.api.v1.metrics import JOB_CLAIMS
from docgen.commands.requeue_expired import LEASE_EXPIRED_ERROR
from docgen.domain.errors import JobStoreError
from docgen.domain.models import ClaimResult, Claimed, Exhausted, Job, Lease, LostRace, is_claimable
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery, JobStore, OrderBy

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 3

# Oldest first, then higher priority
CLAIM_ORDER = (
    OrderBy("created_at"),
    OrderBy("priority", descending=True),
)


def build_claim_query(batch_size: int, now: datetime) -> JobQuery:
    return JobQuery(claimable_at=now, order_by=CLAIM_ORDER, limit=batch_size)


def lease_expiry(now: datetime, lease_duration_seconds: int) -> datetime:
    # Stored timestamps keep millisecond precision; truncate so the value we
    # write compares equal to the value we later read back.
    until = now + timedelta(seconds=lease_duration_seconds)
    return until.replace(microsecond=(until.microsecond // 1000) * 1000)


async def claim_job(
    store: JobStore,
    job_id: str,
    now: datetime,
    lease_duration_seconds: int = DEFAULT_LEASE_SECONDS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> ClaimResult:
    """
    Claims a job for this worker by moving it to PROCESSING with a lease.

    The store has no compare-and-swap, so the job is re-read right before the
    write and skipped if another worker got there first. Two workers can still
    both pass the re-read; the processor's ownership check settles that race.

    Taking over a PROCESSING job whose lease lapsed counts the abandoned run
    as an attempt. If that uses up the budget the job is failed instead and
    `Exhausted` is returned.
    """
    try:
        current = await store.get(job_id)
    except JobStoreError as e:
        logger.warning("Claim re-read failed for job %s: %s", job_id, e)
        JOB_CLAIMS.labels(result="lost").inc()
        return LostRace(job_id, f"re-read failed: {e}")

    if current is None:
        JOB_CLAIMS.labels(result="lost").inc()
        return LostRace(job_id, "job no longer exists")

    if not is_claimable(current, now):
        JOB_CLAIMS.labels(result="lost").inc()
        return LostRace(job_id, f"job is {current.status} and not claimable")

    attempts = current.attempts
    if current.status == JobStatus.PROCESSING:
        attempts += 1
        if attempts >= max_attempts:
            return await _fail_exhausted(store, current, attempts)

    locked_until = lease_expiry(now, lease_duration_seconds)
    try:
        updated = await store.update(job_id, {
            "status": JobStatus.PROCESSING,
            "locked_until": locked_until,
            "attempts": attempts,
        })
    except JobStoreError as e:
        logger.warning("Claim write failed for job %s: %s", job_id, e)
        updated = False

    if not updated:
        JOB_CLAIMS.labels(result="lost").inc()
        return LostRace(job_id, "conditional update did not apply")

    if attempts != current.attempts:
        logger.warning("Took over job %s after its lease lapsed at %s (attempt %d)", job_id, current.locked_until, attempts)

    JOB_CLAIMS.labels(result="claimed").inc()
    job = replace(current, status=JobStatus.PROCESSING, locked_until=locked_until, attempts=attempts)
    return Claimed(job=job, lease=Lease(job_id=job_id, locked_until=locked_until, claimed_at=now))


async def _fail_exhausted(store: JobStore, current: Job, attempts: int) -> ClaimResult:
    try:
        updated = await store.update(current.id, {
            "status": JobStatus.FAILED,
            "attempts": attempts,
            "locked_until": None,
            "scheduled_retry_time": None,
            "error": f"max attempts exceeded: {LEASE_EXPIRED_ERROR}",
        })
    except JobStoreError as e:
        logger.warning("Could not fail job %s after its lease lapsed: %s", current.id, e)
        updated = False

    if not updated:
        JOB_CLAIMS.labels(result="lost").inc()
        return LostRace(current.id, "conditional update did not apply")

    JOB_CLAIMS.labels(result="exhausted").inc()
    logger.warning("Lease on job %s lapsed on its last attempt (%d); marked FAILED", current.id, attempts)
    return Exhausted(job_id=current.id, attempts=attempts)
