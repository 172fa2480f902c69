from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

from docgen.domain.models import Job, WRITABLE_FIELDS, is_claimable
from docgen.domain.states import JobStatus


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class JobQuery:
    """
    Store-independent description of a job selection.

    All given conditions must hold. Each backend translates the query into
    its own filter language; `matches` is the reference semantics.
    """

    claimable_at: Optional[datetime] = None
    lock_expired_at: Optional[datetime] = None
    status: Optional[JobStatus] = None
    exclude_status: Optional[JobStatus] = None
    request_hash: Optional[str] = None
    order_by: tuple[OrderBy, ...] = ()
    limit: Optional[int] = None

    def matches(self, job: Job) -> bool:
        if self.claimable_at is not None and not is_claimable(job, self.claimable_at):
            return False
        if self.lock_expired_at is not None:
            if job.status != JobStatus.PROCESSING:
                return False
            if job.locked_until is None or job.locked_until >= self.lock_expired_at:
                return False
        if self.status is not None and job.status != self.status:
            return False
        if self.exclude_status is not None and job.status == self.exclude_status:
            return False
        if self.request_hash is not None and job.request_hash != self.request_hash:
            return False
        return True

    def without_paging(self) -> "JobQuery":
        return JobQuery(
            claimable_at=self.claimable_at,
            lock_expired_at=self.lock_expired_at,
            status=self.status,
            exclude_status=self.exclude_status,
            request_hash=self.request_hash,
        )


def check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")


class JobStore(Protocol):
    """
    The persistence contract the poller relies on.

    Updates are atomic per record but unconditional: there is no
    compare-and-swap, so callers re-read before writing.
    """

    async def query(self, query: JobQuery) -> list[Job]: ...

    async def count(self, query: JobQuery) -> int: ...

    async def get(self, job_id: str) -> Optional[Job]: ...

    async def insert(self, fields: dict[str, Any]) -> str: ...

    async def update(self, job_id: str, fields: dict[str, Any]) -> bool: ...

    async def delete(self, job_id: str) -> bool: ...

    async def close(self) -> None: ...
