"""Transcoding job model."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, text
import uuid

from database import Base
from models.enums import JobStatus

_ACTIVE_JOB_CLAUSE = text("status IN ('queued', 'processing')")


class TranscodingJob(Base):
    """One requested quality conversion of a file."""

    __tablename__ = "transcoding_jobs"
    __table_args__ = (
        # At most one non-terminal job per (file, quality).
        Index(
            "uq_transcoding_jobs_active_quality",
            "file_id",
            "quality",
            unique=True,
            sqlite_where=_ACTIVE_JOB_CLAUSE,
            postgresql_where=_ACTIVE_JOB_CLAUSE,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id = Column(String, ForeignKey("file_records.id", ondelete="CASCADE"), nullable=False, index=True)
    quality = Column(String, nullable=False)
    status = Column(String, nullable=False, default=JobStatus.QUEUED.value, index=True)
    output_key = Column(String, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
