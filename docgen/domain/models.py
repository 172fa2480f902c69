from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docgen.domain.states import JobStatus, OutputFormat


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """A generation request record as persisted in the job store."""

    id: str
    status: JobStatus
    request_envelope: Optional[str] = None
    request_hash: Optional[str] = None
    attempts: int = 0
    locked_until: Optional[datetime] = None
    scheduled_retry_time: Optional[datetime] = None
    output_file_id: Optional[str] = None
    error: Optional[str] = None
    correlation_id: Optional[str] = None
    priority: int = 0
    created_at: Optional[datetime] = None


# Fields a store may be asked to write. `id` and `created_at` are owned by the store.
WRITABLE_FIELDS = frozenset({
    "status",
    "request_envelope",
    "request_hash",
    "attempts",
    "locked_until",
    "scheduled_retry_time",
    "output_file_id",
    "error",
    "correlation_id",
    "priority",
})


def is_lock_expired(job: Job, now: datetime) -> bool:
    return job.locked_until is None or job.locked_until <= now


def is_claimable(job: Job, now: datetime) -> bool:
    """
    A queued job is claimable when it is neither locked nor backing off.
    A PROCESSING job whose lease has lapsed is treated as queued again,
    which is how a crashed worker's job is recovered without a sweep.
    """
    if job.status == JobStatus.QUEUED:
        if not is_lock_expired(job, now):
            return False
        return job.scheduled_retry_time is None or job.scheduled_retry_time <= now
    if job.status == JobStatus.PROCESSING:
        return job.locked_until is not None and job.locked_until <= now
    return False


@dataclass(frozen=True)
class Lease:
    job_id: str
    locked_until: datetime
    claimed_at: datetime


@dataclass(frozen=True)
class Claimed:
    job: Job
    lease: Lease


@dataclass(frozen=True)
class LostRace:
    job_id: str
    reason: str


@dataclass(frozen=True)
class Exhausted:
    """A lapsed lease was found on the job's last attempt; the job is now FAILED."""

    job_id: str
    attempts: int


ClaimResult = Union[Claimed, LostRace, Exhausted]


@dataclass
class BatchResult:
    claimed: int = 0
    lost: int = 0
    outcomes: list = field(default_factory=list)
    skipped: bool = False
    error: Optional[str] = None


# Request envelope (stored as JSON on the job record)

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocgenOptions(_CamelModel):
    store_merged_docx: bool = False
    return_docx_to_browser: bool = False


class DocgenRequest(_CamelModel):
    template_id: str = Field(min_length=1)
    output_file_name: str = Field(min_length=1)
    output_format: OutputFormat
    locale: str = Field(min_length=1)
    timezone: str = Field(min_length=1)
    options: DocgenOptions
    data: dict[str, Any]
    parents: Optional[dict[str, Optional[str]]] = None
    request_hash: Optional[str] = None

    def parent_ids(self) -> list[str]:
        if not self.parents:
            return []
        return [value for value in self.parents.values() if value]
