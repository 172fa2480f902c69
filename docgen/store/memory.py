from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from docgen.domain.models import Job, utc_now
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery, check_fields

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class InMemoryJobStore:
    """
    Process-local job store.

    No operation awaits internally, so each call is atomic with respect to
    other coroutines on the same event loop.
    """

    def __init__(self):
        self._jobs: dict[str, Job] = {}

    async def query(self, query: JobQuery) -> list[Job]:
        rows = [job for job in self._jobs.values() if query.matches(job)]
        # Stable sorts applied from the least significant key
        for order in reversed(query.order_by):
            rows.sort(key=lambda job: _sort_value(job, order.field), reverse=order.descending)
        if query.limit is not None:
            rows = rows[:query.limit]
        return [replace(job) for job in rows]

    async def count(self, query: JobQuery) -> int:
        return sum(1 for job in self._jobs.values() if query.without_paging().matches(job))

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def insert(self, fields: dict[str, Any]) -> str:
        check_fields(fields)
        job_id = uuid4().hex
        values = {"status": JobStatus.QUEUED, **fields}
        self._jobs[job_id] = Job(id=job_id, created_at=utc_now(), **values)
        return job_id

    async def update(self, job_id: str, fields: dict[str, Any]) -> bool:
        check_fields(fields)
        job = self._jobs.get(job_id)
        if job is None:
            return False
        self._jobs[job_id] = replace(job, **fields)
        return True

    async def delete(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None

    async def close(self) -> None:
        pass


def _sort_value(job: Job, field: str):
    value = getattr(job, field)
    if value is None and field.endswith(("_at", "_time", "_until")):
        return _EPOCH
    return value
