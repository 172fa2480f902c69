from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from docgen.db.session import Base
from docgen.domain.models import utc_now
from docgen.domain.states import JobStatus


def _new_id() -> str:
    return uuid4().hex


class GeneratedDocument(Base):
    __tablename__ = "generated_documents"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)

    # Core orchestration fields
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.QUEUED, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, server_default=text("CURRENT_TIMESTAMP"))

    # Leasing and retry
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    scheduled_retry_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Request
    request_envelope: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    request_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Outcome
    output_file_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # Poll query: status + lock + back-off
        Index("ix_generated_documents_poll", "status", "locked_until", "scheduled_retry_time"),
        Index("ix_generated_documents_request_hash", "request_hash"),
    )
