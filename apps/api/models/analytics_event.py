"""Playback analytics event model."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, JSON, String
import uuid

from database import Base


class AnalyticsEvent(Base):
    """Append-only playback event."""

    __tablename__ = "analytics_events"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    file_id = Column(String, nullable=False, index=True)
    session_id = Column(String, nullable=True, index=True)
    event_type = Column(String, nullable=False, index=True)
    video_time = Column(Float, nullable=True)
    quality = Column(String, nullable=True)
    event_metadata = Column(JSON, nullable=True)
    user_agent = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
