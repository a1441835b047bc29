"""Client playback session model."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String
import uuid

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlaybackSession(Base):
    __tablename__ = "playback_sessions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=True, index=True)
    device_type = Column(String, nullable=True)
    platform = Column(String, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_activity_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
