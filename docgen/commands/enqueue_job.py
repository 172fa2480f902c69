import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Optional

from docgen.domain.models import DocgenRequest, Job
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery, JobStore, OrderBy

logger = logging.getLogger(__name__)


def compute_request_hash(request: DocgenRequest) -> str:
    """Fingerprint of the logical request: template, output format and merge data."""
    # Stable encoding keeps the fingerprint independent of key order.
    canonical = json.dumps(
        {
            "templateId": request.template_id,
            "outputFormat": str(request.output_format),
            "data": request.data,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EnqueueResult:
    job: Job
    created: bool


class JobEnqueuer:
    """
    Creates QUEUED jobs, returning the existing job for a request that is
    already queued, running or done. Enqueues within this process are
    serialised so two quick calls for the same request cannot both insert.
    """

    def __init__(self, store: JobStore):
        self.store = store
        self._lock = asyncio.Lock()

    async def find_existing(self, request_hash: str) -> Optional[Job]:
        rows = await self.store.query(JobQuery(
            request_hash=request_hash,
            exclude_status=JobStatus.FAILED,
            order_by=(OrderBy("created_at"),),
            limit=1,
        ))
        return rows[0] if rows else None

    async def enqueue(self, request: DocgenRequest, correlation_id: str) -> EnqueueResult:
        request_hash = request.request_hash or compute_request_hash(request)

        async with self._lock:
            existing = await self.find_existing(request_hash)
            if existing:
                logger.info("Request %s already tracked by job %s (%s)", request_hash, existing.id, existing.status)
                return EnqueueResult(job=existing, created=False)

            envelope = request.model_copy(update={"request_hash": request_hash})
            fields = {
                "status": JobStatus.QUEUED,
                "request_envelope": envelope.model_dump_json(by_alias=True),
                "request_hash": request_hash,
                "attempts": 0,
                "correlation_id": correlation_id,
            }
            job_id = await self.store.insert(fields)

        logger.info("Enqueued job %s for template %s as %s", job_id, request.template_id, request.output_format)
        job = await self.store.get(job_id)
        return EnqueueResult(job=job or Job(id=job_id, **fields), created=True)
