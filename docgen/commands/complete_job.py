import logging

from docgen.api.v1.metrics import JOB_DURATION
from docgen.domain.errors import JobNotFoundError
from docgen.domain.models import Job, Lease, utc_now
from docgen.domain.states import JobStatus
from docgen.store.base import JobStore

logger = logging.getLogger(__name__)


async def complete_job(store: JobStore, job: Job, lease: Lease, output_file_id: str) -> None:
    """
    Marks a claimed job as SUCCEEDED with its artifact id and releases the lease.
    Counts the attempt. Raises JobStoreError if the write does not reach the store.
    """
    if not output_file_id:
        raise ValueError(f"Job {job.id} cannot succeed without an output file id")

    updated = await store.update(job.id, {
        "status": JobStatus.SUCCEEDED,
        "output_file_id": output_file_id,
        "attempts": job.attempts + 1,
        "locked_until": None,
        "scheduled_retry_time": None,
        "error": None,
    })
    if not updated:
        raise JobNotFoundError(job.id)

    duration = (utc_now() - lease.claimed_at).total_seconds()
    if duration > 0:
        JOB_DURATION.observe(duration)

    logger.info("Job %s succeeded (attempt %d, output %s)", job.id, job.attempts + 1, output_file_id)
