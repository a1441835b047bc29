"""
Playback analytics ingestion and reporting.
"""

import logging

from fastapi import APIRouter, Depends, Query, Request

from config import settings
from routers.deps import require_feature, require_repository
from routers.rate_limit import client_address, rate_limit
from routers.schemas import TrackEventRequest
from services.errors import NotFoundError
from services.repository import MetadataRepository

router = APIRouter(dependencies=[Depends(require_feature("analytics"))])
logger = logging.getLogger(__name__)


@router.post("/track", dependencies=[Depends(rate_limit("analytics_track"))])
async def track_event(
    event: TrackEventRequest,
    request: Request,
    repository: MetadataRepository = Depends(require_repository),
):
    """Append one playback event; events for a known session refresh its activity."""
    record = await repository.get_file(event.file_id)
    if record is None:
        raise NotFoundError("File not found")

    stored = await repository.record_event(
        file_id=record.id,
        session_id=event.session_id,
        event_type=event.event_type.value,
        video_time=event.video_time,
        quality=(event.quality or "").strip().lower() or None,
        metadata=event.metadata,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_address(request),
    )
    session_active = None
    if event.session_id:
        session_active = await repository.touch_session(event.session_id)

    return {
        "message": "Event tracked successfully",
        "eventId": stored.id,
        "eventType": stored.event_type,
        "sessionActive": session_active,
    }


@router.get("/files/{file_id}/stats")
async def file_stats(
    file_id: str,
    repository: MetadataRepository = Depends(require_repository),
):
    record = await repository.get_file(file_id)
    if record is None:
        raise NotFoundError("File not found")
    stats = await repository.file_stats(record.id)
    stats.update(
        fileId=record.id,
        fileName=record.stored_key,
        viewCount=int(record.view_count or 0),
        lastViewedAt=record.last_viewed_at.isoformat() if record.last_viewed_at else None,
    )
    return stats


@router.get("/dashboard")
async def dashboard(
    days: int = Query(default=7, ge=1, le=365),
    repository: MetadataRepository = Depends(require_repository),
):
    summary = await repository.dashboard(days=days)
    summary["features"] = settings.feature_flags
    return summary
