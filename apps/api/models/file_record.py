"""Uploaded file metadata model."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, BigInteger, JSON, String, Text
from sqlalchemy.orm import relationship
import uuid

from database import Base
from models.enums import ProcessingStatus, Projection


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileRecord(Base):
    """One uploaded video asset and everything derived from it."""

    __tablename__ = "file_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    stored_key = Column(String, nullable=False, unique=True, index=True)
    bucket_name = Column(String, nullable=True)
    original_name = Column(String, nullable=False)
    file_size_bytes = Column(BigInteger, nullable=True)
    mime_type = Column(String, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    resolution = Column(String, nullable=True)  # "3840x1920"
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    frame_rate = Column(Float, nullable=True)
    bitrate = Column(Integer, nullable=True)
    codec = Column(String, nullable=True)
    has_audio = Column(Boolean, nullable=True)
    is_360 = Column(Boolean, nullable=False, default=False)
    projection = Column(String, nullable=False, default=Projection.NONE.value)
    thumbnail_key = Column(String, nullable=True)
    processing_status = Column(String, nullable=False, default=ProcessingStatus.PENDING.value, index=True)
    error_message = Column(Text, nullable=True)
    view_count = Column(Integer, nullable=False, default=0)
    last_viewed_at = Column(DateTime(timezone=True), nullable=True)
    uploader_id = Column(String, nullable=True, index=True)
    tags = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)

    renditions = relationship(
        "FileRendition",
        back_populates="file",
        lazy="selectin",
    )

    @property
    def qualities(self) -> dict:
        """Quality label -> stored key of that rendition."""
        return {rendition.quality: rendition.stored_key for rendition in self.renditions or []}
