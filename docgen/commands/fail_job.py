import logging
from datetime import datetime
from typing import Optional

from docgen.api.v1.metrics import JOB_FAILURES
from docgen.domain.classifier import Action, decide
from docgen.domain.errors import JobNotFoundError
from docgen.domain.models import Job
from docgen.domain.retry import RetryPolicy
from docgen.domain.states import ErrorKind, JobOutcome, JobStatus
from docgen.store.base import JobStore

logger = logging.getLogger(__name__)

ERROR_MAX_LENGTH = 32000


def _truncate(message: str) -> str:
    message = message or "Unknown error"
    if len(message) <= ERROR_MAX_LENGTH:
        return message
    return message[:ERROR_MAX_LENGTH - 3] + "..."


async def fail_job(
    store: JobStore,
    job: Job,
    error: str,
    kind: ErrorKind,
    policy: RetryPolicy,
    now: datetime,
    rng=None,
) -> JobOutcome:
    """
    Records a failed attempt on a claimed job.

    Retryable failures with budget left go back to QUEUED with a back-off
    delay; everything else becomes FAILED. Returns RETRIED or FAILED.
    Raises JobStoreError if the write does not reach the store.
    """
    attempts = job.attempts + 1
    decision = decide(kind, attempts, policy.max_attempts)
    JOB_FAILURES.labels(kind=kind).inc()

    if decision.action == Action.RETRY:
        next_run = policy.next_run(attempts, now, rng=rng)
        updated = await store.update(job.id, {
            "status": JobStatus.QUEUED,
            "attempts": attempts,
            "locked_until": None,
            "scheduled_retry_time": next_run,
            "error": None,
        })
        if not updated:
            raise JobNotFoundError(job.id)
        logger.warning(
            "Job %s failed (attempt %d/%d), retrying at %s: %s",
            job.id, attempts, policy.max_attempts, next_run.isoformat(), error,
        )
        return JobOutcome.RETRIED

    message: Optional[str] = error
    if decision.exhausted:
        message = f"max attempts exceeded: {error}"

    updated = await store.update(job.id, {
        "status": JobStatus.FAILED,
        "attempts": attempts,
        "locked_until": None,
        "scheduled_retry_time": None,
        "error": _truncate(message),
    })
    if not updated:
        raise JobNotFoundError(job.id)

    log_fn = logger.error if kind == ErrorKind.FATAL else logger.warning
    log_fn("Job %s failed permanently (%s, attempt %d): %s", job.id, kind, attempts, message)
    return JobOutcome.FAILED
