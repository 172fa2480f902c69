from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from docgen.db.models import GeneratedDocument
from docgen.db.session import Base, create_engine, create_session_factory
from docgen.domain.errors import StoreUnavailableError
from docgen.domain.models import Job
from docgen.domain.states import JobStatus
from docgen.store.base import JobQuery, check_fields


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_job(row: GeneratedDocument) -> Job:
    return Job(
        id=row.id,
        status=JobStatus(row.status),
        request_envelope=row.request_envelope,
        request_hash=row.request_hash,
        attempts=row.attempts or 0,
        locked_until=_aware(row.locked_until),
        scheduled_retry_time=_aware(row.scheduled_retry_time),
        output_file_id=row.output_file_id,
        error=row.error,
        correlation_id=row.correlation_id,
        priority=row.priority or 0,
        created_at=_aware(row.created_at),
    )


def _conditions(query: JobQuery) -> list:
    doc = GeneratedDocument
    conditions = []

    if query.claimable_at is not None:
        now = query.claimable_at
        conditions.append(or_(
            and_(
                doc.status == JobStatus.QUEUED,
                or_(doc.locked_until.is_(None), doc.locked_until <= now),
                or_(doc.scheduled_retry_time.is_(None), doc.scheduled_retry_time <= now),
            ),
            and_(
                doc.status == JobStatus.PROCESSING,
                doc.locked_until.is_not(None),
                doc.locked_until <= now,
            ),
        ))
    if query.lock_expired_at is not None:
        conditions.append(doc.status == JobStatus.PROCESSING)
        conditions.append(doc.locked_until < query.lock_expired_at)
    if query.status is not None:
        conditions.append(doc.status == query.status)
    if query.exclude_status is not None:
        conditions.append(doc.status != query.exclude_status)
    if query.request_hash is not None:
        conditions.append(doc.request_hash == query.request_hash)
    return conditions


class SqlJobStore:
    """Job store backed by a SQLAlchemy async engine."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = create_session_factory(engine)

    @classmethod
    def from_uri(cls, database_uri: str) -> "SqlJobStore":
        return cls(create_engine(database_uri))

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def query(self, query: JobQuery) -> list[Job]:
        stmt = select(GeneratedDocument).where(*_conditions(query))
        for order in query.order_by:
            column = getattr(GeneratedDocument, order.field)
            stmt = stmt.order_by(column.desc() if order.descending else column.asc())
        if query.limit is not None:
            stmt = stmt.limit(query.limit)

        try:
            async with self._sessions() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Job query failed: {e}") from e
        return [_to_job(row) for row in rows]

    async def count(self, query: JobQuery) -> int:
        stmt = select(func.count()).select_from(GeneratedDocument).where(*_conditions(query))
        try:
            async with self._sessions() as session:
                return (await session.execute(stmt)).scalar() or 0
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Job count failed: {e}") from e

    async def get(self, job_id: str) -> Optional[Job]:
        try:
            async with self._sessions() as session:
                row = await session.get(GeneratedDocument, job_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Job lookup failed: {e}") from e
        return _to_job(row) if row else None

    async def insert(self, fields: dict[str, Any]) -> str:
        check_fields(fields)
        row = GeneratedDocument(**{"status": JobStatus.QUEUED, "attempts": 0, **fields})
        try:
            async with self._sessions() as session:
                async with session.begin():
                    session.add(row)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Job insert failed: {e}") from e
        return row.id

    async def update(self, job_id: str, fields: dict[str, Any]) -> bool:
        check_fields(fields)
        stmt = update(GeneratedDocument).where(GeneratedDocument.id == job_id).values(**fields)
        try:
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Job update failed: {e}") from e
        return result.rowcount > 0

    async def delete(self, job_id: str) -> bool:
        stmt = delete(GeneratedDocument).where(GeneratedDocument.id == job_id)
        try:
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Job delete failed: {e}") from e
        return result.rowcount > 0

    async def close(self) -> None:
        await self.engine.dispose()
