"""Request bodies and response serializers shared by the routers."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.enums import EventType
from models.file_record import FileRecord
from models.playback_session import PlaybackSession
from models.transcoding_job import TranscodingJob


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateUploadUrlRequest(CamelModel):
    file_name: str = Field(min_length=1, max_length=512)
    file_type: str = Field(min_length=1, max_length=128)
    file_size: int
    user_id: Optional[str] = Field(default=None, max_length=128)
    tags: List[str] = Field(default_factory=list)


class BulkSignedUrlRequest(CamelModel):
    file_names: List[str] = Field(min_length=1, max_length=100)
    expires_in_minutes: int = Field(default=60, ge=1)
    action: Literal["read", "write"] = "read"


class TranscodeRequest(CamelModel):
    quality: str = Field(min_length=1, max_length=32)


class ThumbnailRequest(CamelModel):
    time_offset: float = Field(default=1.0, ge=0)


class CreateSessionRequest(CamelModel):
    user_id: Optional[str] = Field(default=None, max_length=128)
    device_type: Optional[str] = Field(default=None, max_length=64)
    platform: Optional[str] = Field(default=None, max_length=64)


class TrackEventRequest(CamelModel):
    file_id: str = Field(min_length=1, max_length=128)
    session_id: Optional[str] = Field(default=None, max_length=128)
    event_type: EventType
    video_time: Optional[float] = Field(default=None, ge=0)
    quality: Optional[str] = Field(default=None, max_length=32)
    metadata: Optional[Dict[str, Any]] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_file_record(record: FileRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "fileName": record.stored_key,
        "originalName": record.original_name,
        "bucketName": record.bucket_name,
        "fileSize": record.file_size_bytes,
        "mimeType": record.mime_type,
        "duration": record.duration_seconds,
        "resolution": record.resolution,
        "frameRate": record.frame_rate,
        "bitrate": record.bitrate,
        "codec": record.codec,
        "hasAudio": record.has_audio,
        "is360": bool(record.is_360),
        "projection": record.projection,
        "thumbnailKey": record.thumbnail_key,
        "qualities": record.qualities,
        "processingStatus": record.processing_status,
        "errorMessage": record.error_message,
        "viewCount": int(record.view_count or 0),
        "lastViewedAt": _iso(record.last_viewed_at),
        "uploaderId": record.uploader_id,
        "tags": list(record.tags or []),
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
    }


def serialize_job(job: TranscodingJob) -> Dict[str, Any]:
    return {
        "jobId": job.id,
        "fileId": job.file_id,
        "quality": job.quality,
        "status": job.status,
        "outputKey": job.output_key,
        "progress": int(job.progress or 0),
        "errorMessage": job.error_message,
        "createdAt": _iso(job.created_at),
        "startedAt": _iso(job.started_at),
        "completedAt": _iso(job.completed_at),
    }


def serialize_session(session: PlaybackSession) -> Dict[str, Any]:
    return {
        "sessionId": session.id,
        "userId": session.user_id,
        "deviceType": session.device_type,
        "platform": session.platform,
        "startedAt": _iso(session.started_at),
        "lastActivityAt": _iso(session.last_activity_at),
        "endedAt": _iso(session.ended_at),
        "isActive": bool(session.is_active),
        "persisted": True,
    }
