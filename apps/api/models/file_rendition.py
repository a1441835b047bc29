"""Derived rendition (quality mapping entry) model."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid

from database import Base


class FileRendition(Base):
    """Append-only quality label -> stored key entry for a file."""

    __tablename__ = "file_renditions"
    __table_args__ = (UniqueConstraint("file_id", "quality", name="uq_file_renditions_file_quality"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id = Column(String, ForeignKey("file_records.id", ondelete="CASCADE"), nullable=False, index=True)
    quality = Column(String, nullable=False)
    stored_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    file = relationship("FileRecord", back_populates="renditions")
