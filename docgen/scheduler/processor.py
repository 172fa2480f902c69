import json
import logging
from datetime import datetime
from typing import Callable, Optional

from pydantic import ValidationError

from docgen.api.v1.metrics import JOB_OUTCOMES
from docgen.commands.complete_job import complete_job
from docgen.commands.fail_job import fail_job
from docgen.domain.classifier import classify_error
from docgen.domain.errors import (
    EnvelopeError,
    InvalidRequestError,
    JobStoreError,
    RenderKind,
    UploadError,
)
from docgen.domain.models import DocgenRequest, Job, Lease, utc_now
from docgen.domain.retry import RetryPolicy
from docgen.domain.states import ErrorKind, JobOutcome, JobStatus, TERMINAL_STATUSES
from docgen.logging_config import correlation_id_var
from docgen.rendering.base import FileStore, Renderer
from docgen.store.base import JobQuery, JobStore

logger = logging.getLogger(__name__)


def parse_envelope(job: Job) -> DocgenRequest:
    """
    Decodes the stored request. Undecodable JSON raises EnvelopeError (an
    internal fault); well-formed JSON that is not a valid request raises
    InvalidRequestError (bad input).
    """
    if not job.request_envelope:
        raise EnvelopeError(job.id, "envelope is empty")
    try:
        raw = json.loads(job.request_envelope)
    except json.JSONDecodeError as e:
        raise EnvelopeError(job.id, e) from e
    if not isinstance(raw, dict):
        raise EnvelopeError(job.id, "envelope is not a JSON object")

    try:
        return DocgenRequest.model_validate(raw)
    except ValidationError as e:
        raise InvalidRequestError(f"Invalid generation request for job {job.id}: {e}") from e


class JobProcessor:
    """Runs one claimed job through render, upload and the terminal write."""

    def __init__(
        self,
        store: JobStore,
        renderer: Renderer,
        file_store: FileStore,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.renderer = renderer
        self.file_store = file_store
        self.policy = policy or RetryPolicy()
        self.clock = clock

    async def process(self, job: Job, lease: Lease) -> JobOutcome:
        token = correlation_id_var.set(job.correlation_id)
        try:
            outcome = await self._process(job, lease)
        finally:
            correlation_id_var.reset(token)
        JOB_OUTCOMES.labels(outcome=outcome).inc()
        return outcome

    async def _process(self, job: Job, lease: Lease) -> JobOutcome:
        try:
            if not await self._still_owned(job, lease):
                return JobOutcome.SKIPPED

            request = parse_envelope(job)

            output_file_id = await self._reuse_artifact(job)
            if output_file_id is None:
                content = await self.renderer.render(
                    request.template_id,
                    request.data,
                    request.locale,
                    request.timezone,
                    request.output_format,
                )
                output_file_id = await self.file_store.upload(
                    content,
                    request.output_file_name,
                    request.parent_ids(),
                )
                if not output_file_id:
                    raise UploadError(RenderKind.UNKNOWN, f"File store returned no artifact id for job {job.id}")
        except Exception as e:
            # Failures stay inside this job; the rest of the batch carries on
            return await self._dispose(job, lease, e)

        try:
            if not await self._still_owned(job, lease):
                logger.warning("Job %s lost its lease before completion; output %s not recorded", job.id, output_file_id)
                return JobOutcome.SKIPPED
            await complete_job(self.store, job, lease, output_file_id)
        except JobStoreError as e:
            logger.error("Job %s rendered and uploaded as %s but success was not recorded: %s", job.id, output_file_id, e)
            return JobOutcome.ABANDONED
        return JobOutcome.SUCCEEDED

    async def _still_owned(self, job: Job, lease: Lease) -> bool:
        current = await self.store.get(job.id)
        if current is None:
            logger.warning("Job %s disappeared from the store", job.id)
            return False
        if current.status in TERMINAL_STATUSES:
            logger.info("Job %s already %s by another worker, skipping", job.id, current.status)
            return False
        if current.status != JobStatus.PROCESSING or current.locked_until != lease.locked_until:
            logger.info("Lease on job %s is held by another worker, skipping", job.id)
            return False
        return True

    async def _reuse_artifact(self, job: Job) -> Optional[str]:
        if not job.request_hash:
            return None
        done = await self.store.query(JobQuery(request_hash=job.request_hash, status=JobStatus.SUCCEEDED, limit=2))
        for other in done:
            if other.id != job.id and other.output_file_id:
                logger.info("Job %s duplicates job %s, reusing output %s", job.id, other.id, other.output_file_id)
                return other.output_file_id
        return None

    async def _dispose(self, job: Job, lease: Lease, exc: Exception) -> JobOutcome:
        kind = classify_error(exc)
        if kind == ErrorKind.FATAL:
            logger.error("Unexpected error processing job %s", job.id, exc_info=exc)

        try:
            # Another worker that took over the lapsed lease owns the outcome now
            if not await self._still_owned(job, lease):
                return JobOutcome.SKIPPED
            return await fail_job(self.store, job, str(exc), kind, self.policy, self.clock())
        except JobStoreError as e:
            logger.error("Could not record failure of job %s, lease will lapse: %s", job.id, e)
            return JobOutcome.ABANDONED
