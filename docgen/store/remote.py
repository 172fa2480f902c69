"""
Job store over the remote record store.

Jobs live as Generated_Document__c records; JobQuery is rendered as SOQL.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional

from docgen.domain.errors import JobStoreError, StoreUnavailableError
from docgen.domain.models import Job
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery, check_fields
from recordstore import RecordStoreClient, RecordStoreError

logger = logging.getLogger(__name__)

SOBJECT = "Generated_Document__c"

FIELD_MAP = {
    "id": "Id",
    "status": "Status__c",
    "request_envelope": "RequestJSON__c",
    "request_hash": "RequestHash__c",
    "attempts": "Attempts__c",
    "locked_until": "LockedUntil__c",
    "scheduled_retry_time": "ScheduledRetryTime__c",
    "output_file_id": "OutputFileId__c",
    "error": "Error__c",
    "correlation_id": "CorrelationId__c",
    "created_at": "CreatedDate",
}

_DATETIME_FIELDS = frozenset({"locked_until", "scheduled_retry_time", "created_at"})
_OFFSET_NO_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def format_datetime(value: datetime) -> str:
    """Millisecond precision UTC literal, the resolution the store keeps."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value.replace("Z", "+00:00")
    text = _OFFSET_NO_COLON.sub(r"\1:\2", text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


class RemoteJobStore:
    def __init__(self, client: RecordStoreClient, priority_field: Optional[str] = None):
        self.client = client
        self.fields = dict(FIELD_MAP)
        if priority_field:
            self.fields["priority"] = priority_field

    # SOQL rendering

    def _field(self, name: str) -> str:
        try:
            return self.fields[name]
        except KeyError:
            raise ValueError(f"Field {name!r} is not mapped for {SOBJECT}") from None

    def build_where(self, query: JobQuery) -> str:
        status = self._field("status")
        locked = self._field("locked_until")
        retry = self._field("scheduled_retry_time")
        clauses = []

        if query.claimable_at is not None:
            now = format_datetime(query.claimable_at)
            clauses.append(
                f"(({status} = 'QUEUED'"
                f" AND ({locked} = null OR {locked} <= {now})"
                f" AND ({retry} = null OR {retry} <= {now}))"
                f" OR ({status} = 'PROCESSING' AND {locked} != null AND {locked} <= {now}))"
            )
        if query.lock_expired_at is not None:
            clauses.append(f"{status} = 'PROCESSING'")
            clauses.append(f"{locked} < {format_datetime(query.lock_expired_at)}")
        if query.status is not None:
            clauses.append(f"{status} = {quote(query.status)}")
        if query.exclude_status is not None:
            clauses.append(f"{status} != {quote(query.exclude_status)}")
        if query.request_hash is not None:
            clauses.append(f"{self._field('request_hash')} = {quote(query.request_hash)}")

        return " AND ".join(clauses)

    def build_soql(self, query: JobQuery) -> str:
        soql = f"SELECT {', '.join(self.fields.values())} FROM {SOBJECT}"
        where = self.build_where(query)
        if where:
            soql += f" WHERE {where}"

        orders = []
        for order in query.order_by:
            if order.field not in self.fields:
                # Optional ordering keys (priority) are skipped when unmapped
                continue
            direction = "DESC NULLS LAST" if order.descending else "ASC"
            orders.append(f"{self.fields[order.field]} {direction}")
        if orders:
            soql += f" ORDER BY {', '.join(orders)}"

        if query.limit is not None:
            soql += f" LIMIT {int(query.limit)}"
        return soql

    def build_count_soql(self, query: JobQuery) -> str:
        soql = f"SELECT COUNT() FROM {SOBJECT}"
        where = self.build_where(query)
        if where:
            soql += f" WHERE {where}"
        return soql

    # Record mapping

    def to_job(self, record: dict[str, Any]) -> Job:
        values = {}
        for name, api_name in self.fields.items():
            if api_name not in record:
                continue
            value = record[api_name]
            if name in _DATETIME_FIELDS:
                value = parse_datetime(value)
            values[name] = value

        try:
            values["status"] = JobStatus(values.get("status"))
        except ValueError:
            raise JobStoreError(f"Record {record.get('Id')} has unknown status {values.get('status')!r}") from None
        values["attempts"] = int(values.get("attempts") or 0)
        if "priority" in values:
            values["priority"] = int(values["priority"] or 0)
        return Job(**values)

    def to_record(self, fields: dict[str, Any]) -> dict[str, Any]:
        check_fields(fields)
        record = {}
        for name, value in fields.items():
            if name not in self.fields:
                continue
            if isinstance(value, datetime):
                value = format_datetime(value)
            elif isinstance(value, JobStatus):
                value = str(value)
            record[self.fields[name]] = value
        return record

    # JobStore

    async def query(self, query: JobQuery) -> list[Job]:
        soql = self.build_soql(query)
        try:
            records = await self.client.query(soql)
        except RecordStoreError as e:
            raise _store_error(e) from e
        return [self.to_job(record) for record in records]

    async def count(self, query: JobQuery) -> int:
        try:
            return await self.client.count(self.build_count_soql(query))
        except RecordStoreError as e:
            raise _store_error(e) from e

    async def get(self, job_id: str) -> Optional[Job]:
        try:
            record = await self.client.get(SOBJECT, job_id, fields=list(self.fields.values()))
        except RecordStoreError as e:
            raise _store_error(e) from e
        return self.to_job(record) if record else None

    async def insert(self, fields: dict[str, Any]) -> str:
        record = self.to_record({"status": JobStatus.QUEUED, "attempts": 0, **fields})
        try:
            return await self.client.insert(SOBJECT, record)
        except RecordStoreError as e:
            raise _store_error(e) from e

    async def update(self, job_id: str, fields: dict[str, Any]) -> bool:
        try:
            return await self.client.update(SOBJECT, job_id, self.to_record(fields))
        except RecordStoreError as e:
            raise _store_error(e) from e

    async def delete(self, job_id: str) -> bool:
        try:
            return await self.client.delete(SOBJECT, job_id)
        except RecordStoreError as e:
            raise _store_error(e) from e

    async def close(self) -> None:
        await self.client.close()


def _store_error(e: RecordStoreError) -> JobStoreError:
    if e.status_code is None or e.status_code == 401 or e.status_code >= 500:
        return StoreUnavailableError(str(e), status_code=e.status_code)
    return JobStoreError(str(e), status_code=e.status_code)
