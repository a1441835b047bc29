"""Optional relational record-keeping for files, transcodes, sessions and analytics."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from database import create_schema
from models.analytics_event import AnalyticsEvent
from models.enums import ACTIVE_JOB_STATUSES, JobStatus, ProcessingStatus
from models.file_record import FileRecord
from models.file_rendition import FileRendition
from models.playback_session import PlaybackSession
from models.transcoding_job import TranscodingJob

logger = logging.getLogger(__name__)

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def best_effort(label: str, awaitable: Awaitable[T]) -> Optional[T]:
    """Await a repository call on a user-facing path; log and return None on database errors."""
    try:
        return await awaitable
    except SQLAlchemyError as exc:
        logger.warning("Repository call %s failed, continuing without it: %s", label, exc)
        return None


class MetadataRepository:
    """Record store keyed by identifier; every mutation is a single-row statement."""

    def __init__(self, session_maker: async_sessionmaker, engine: Optional[AsyncEngine] = None):
        self._session_maker = session_maker
        self._engine = engine

    # Lifecycle

    async def ping(self) -> None:
        async with self._session_maker() as db:
            await db.execute(text("SELECT 1"))

    async def create_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Schema creation requires an engine")
        await create_schema(self._engine)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

    # File records

    async def create_file_record(
        self,
        *,
        stored_key: str,
        original_name: str,
        file_size_bytes: Optional[int],
        mime_type: Optional[str],
        bucket_name: Optional[str] = None,
        uploader_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> FileRecord:
        record = FileRecord(
            stored_key=stored_key,
            original_name=original_name,
            file_size_bytes=file_size_bytes,
            mime_type=mime_type,
            bucket_name=bucket_name,
            uploader_id=uploader_id,
            tags=list(tags or []),
            processing_status=ProcessingStatus.PENDING.value,
            view_count=0,
            renditions=[],
        )
        async with self._session_maker() as db:
            db.add(record)
            await db.commit()
        return record

    async def get_file(self, file_id: str) -> Optional[FileRecord]:
        async with self._session_maker() as db:
            result = await db.execute(select(FileRecord).where(FileRecord.id == file_id))
            return result.scalar_one_or_none()

    async def get_file_by_key(self, stored_key: str) -> Optional[FileRecord]:
        async with self._session_maker() as db:
            result = await db.execute(select(FileRecord).where(FileRecord.stored_key == stored_key))
            return result.scalar_one_or_none()

    async def find_by_keys(self, keys: Iterable[str]) -> Dict[str, FileRecord]:
        wanted = list(dict.fromkeys(keys))
        if not wanted:
            return {}
        async with self._session_maker() as db:
            result = await db.execute(select(FileRecord).where(FileRecord.stored_key.in_(wanted)))
            return {record.stored_key: record for record in result.scalars().all()}

    async def list_files(self, limit: int = 50, offset: int = 0, prefix: Optional[str] = None) -> List[FileRecord]:
        query = select(FileRecord)
        if prefix:
            query = query.where(FileRecord.stored_key.startswith(prefix, autoescape=True))
        query = query.order_by(FileRecord.created_at.desc(), FileRecord.id).limit(limit).offset(offset)
        async with self._session_maker() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def count_files(self, prefix: Optional[str] = None) -> int:
        query = select(func.count(FileRecord.id))
        if prefix:
            query = query.where(FileRecord.stored_key.startswith(prefix, autoescape=True))
        async with self._session_maker() as db:
            return int((await db.execute(query)).scalar_one() or 0)

    async def transition_status(
        self,
        file_id: str,
        expected: Sequence[str],
        new_status: ProcessingStatus,
        **fields: Any,
    ) -> bool:
        """Move a record to ``new_status`` only if it is currently in ``expected``.

        Returns False when another task already moved it, so callers never
        regress a status they did not observe.
        """
        values = dict(fields)
        values["processing_status"] = new_status.value
        values["updated_at"] = utcnow()
        async with self._session_maker() as db:
            result = await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id, FileRecord.processing_status.in_(list(expected)))
                .values(**values)
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    async def set_thumbnail(self, file_id: str, thumbnail_key: str) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id)
                .values(thumbnail_key=thumbnail_key, updated_at=utcnow())
            )
            await db.commit()

    async def add_rendition(self, file_id: str, quality: str, stored_key: str) -> bool:
        """Append one quality mapping entry. An existing entry for the quality is kept."""
        async with self._session_maker() as db:
            db.add(FileRendition(file_id=file_id, quality=quality, stored_key=stored_key))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Rendition %s already recorded for file %s", quality, file_id)
                return False
        return True

    async def record_view(self, file_id: str) -> None:
        async with self._session_maker() as db:
            await db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id)
                .values(view_count=FileRecord.view_count + 1, last_viewed_at=utcnow())
            )
            await db.commit()

    async def delete_file_by_key(self, stored_key: str) -> Optional[FileRecord]:
        async with self._session_maker() as db:
            result = await db.execute(select(FileRecord).where(FileRecord.stored_key == stored_key))
            record = result.scalar_one_or_none()
            if record is None:
                return None
            await db.execute(delete(FileRendition).where(FileRendition.file_id == record.id))
            await db.execute(delete(TranscodingJob).where(TranscodingJob.file_id == record.id))
            await db.execute(delete(FileRecord).where(FileRecord.id == record.id))
            await db.commit()
            return record

    # Transcoding jobs

    async def find_active_job(self, file_id: str, quality: str) -> Optional[TranscodingJob]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(TranscodingJob).where(
                    TranscodingJob.file_id == file_id,
                    TranscodingJob.quality == quality,
                    TranscodingJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            return result.scalars().first()

    async def create_transcoding_job(self, file_id: str, quality: str) -> Tuple[TranscodingJob, bool]:
        """Create a queued job, or return the job already active for (file, quality)."""
        existing = await self.find_active_job(file_id, quality)
        if existing is not None:
            return existing, False

        job = TranscodingJob(file_id=file_id, quality=quality, status=JobStatus.QUEUED.value, progress=0)
        async with self._session_maker() as db:
            db.add(job)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
            else:
                return job, True

        # Lost the insert race; the winner may already have finished.
        async with self._session_maker() as db:
            result = await db.execute(
                select(TranscodingJob)
                .where(TranscodingJob.file_id == file_id, TranscodingJob.quality == quality)
                .order_by(TranscodingJob.created_at.desc())
            )
            existing = result.scalars().first()
        if existing is None:
            raise RuntimeError(f"Could not create or find transcoding job for {file_id}/{quality}")
        return existing, False

    async def get_job(self, job_id: str) -> Optional[TranscodingJob]:
        async with self._session_maker() as db:
            result = await db.execute(select(TranscodingJob).where(TranscodingJob.id == job_id))
            return result.scalar_one_or_none()

    async def list_jobs_for_file(self, file_id: str) -> List[TranscodingJob]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(TranscodingJob)
                .where(TranscodingJob.file_id == file_id)
                .order_by(TranscodingJob.created_at.desc())
            )
            return list(result.scalars().all())

    async def list_queued_job_ids(self) -> List[str]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(TranscodingJob.id)
                .where(TranscodingJob.status == JobStatus.QUEUED.value)
                .order_by(TranscodingJob.created_at.asc())
            )
            return list(result.scalars().all())

    async def transition_job(
        self,
        job_id: str,
        expected: Sequence[str],
        new_status: JobStatus,
        **fields: Any,
    ) -> bool:
        values = dict(fields)
        values["status"] = new_status.value
        if "error_message" in values and values["error_message"]:
            values["error_message"] = str(values["error_message"])[:2000]
        async with self._session_maker() as db:
            result = await db.execute(
                update(TranscodingJob)
                .where(TranscodingJob.id == job_id, TranscodingJob.status.in_(list(expected)))
                .values(**values)
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    # Sessions

    async def create_session(
        self,
        user_id: Optional[str] = None,
        device_type: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> PlaybackSession:
        now = utcnow()
        session = PlaybackSession(
            user_id=user_id,
            device_type=device_type,
            platform=platform,
            started_at=now,
            last_activity_at=now,
            is_active=True,
        )
        async with self._session_maker() as db:
            db.add(session)
            await db.commit()
        return session

    async def get_session(self, session_id: str) -> Optional[PlaybackSession]:
        async with self._session_maker() as db:
            result = await db.execute(select(PlaybackSession).where(PlaybackSession.id == session_id))
            return result.scalar_one_or_none()

    async def touch_session(self, session_id: str) -> bool:
        """Refresh activity on an active session; inactive sessions stay closed."""
        async with self._session_maker() as db:
            result = await db.execute(
                update(PlaybackSession)
                .where(PlaybackSession.id == session_id, PlaybackSession.is_active.is_(True))
                .values(last_activity_at=utcnow())
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    async def end_session(self, session_id: str) -> bool:
        now = utcnow()
        async with self._session_maker() as db:
            result = await db.execute(
                update(PlaybackSession)
                .where(PlaybackSession.id == session_id, PlaybackSession.is_active.is_(True))
                .values(is_active=False, ended_at=now, last_activity_at=now)
            )
            await db.commit()
            return (result.rowcount or 0) > 0

    async def expire_idle_sessions(self, cutoff: datetime) -> int:
        async with self._session_maker() as db:
            result = await db.execute(
                update(PlaybackSession)
                .where(PlaybackSession.is_active.is_(True), PlaybackSession.last_activity_at < cutoff)
                .values(is_active=False, ended_at=utcnow())
            )
            await db.commit()
            return int(result.rowcount or 0)

    # Analytics

    async def record_event(
        self,
        *,
        file_id: str,
        event_type: str,
        session_id: Optional[str] = None,
        video_time: Optional[float] = None,
        quality: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AnalyticsEvent:
        event = AnalyticsEvent(
            file_id=file_id,
            session_id=session_id,
            event_type=event_type,
            video_time=video_time,
            quality=quality,
            event_metadata=metadata or None,
            user_agent=user_agent[:512] if user_agent else None,
            ip_address=ip_address,
        )
        async with self._session_maker() as db:
            db.add(event)
            await db.commit()
        return event

    async def file_stats(self, file_id: str) -> Dict[str, Any]:
        async with self._session_maker() as db:
            by_type = await db.execute(
                select(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
                .where(AnalyticsEvent.file_id == file_id)
                .group_by(AnalyticsEvent.event_type)
            )
            events_by_type = {event_type: int(count) for event_type, count in by_type.all()}
            unique_sessions = (
                await db.execute(
                    select(func.count(func.distinct(AnalyticsEvent.session_id))).where(
                        AnalyticsEvent.file_id == file_id,
                        AnalyticsEvent.session_id.is_not(None),
                    )
                )
            ).scalar_one()
            avg_position = (
                await db.execute(
                    select(func.avg(AnalyticsEvent.video_time)).where(
                        AnalyticsEvent.file_id == file_id,
                        AnalyticsEvent.event_type == "view_end",
                    )
                )
            ).scalar_one()
            quality_rows = await db.execute(
                select(AnalyticsEvent.quality, func.count(AnalyticsEvent.id))
                .where(AnalyticsEvent.file_id == file_id, AnalyticsEvent.quality.is_not(None))
                .group_by(AnalyticsEvent.quality)
            )
        return {
            "totalEvents": sum(events_by_type.values()),
            "eventsByType": events_by_type,
            "uniqueSessions": int(unique_sessions or 0),
            "averageViewEndPosition": round(float(avg_position), 2) if avg_position is not None else None,
            "qualityUsage": {quality: int(count) for quality, count in quality_rows.all()},
        }

    async def dashboard(self, days: int = 7, top: int = 10) -> Dict[str, Any]:
        since = utcnow() - timedelta(days=max(int(days), 1))
        async with self._session_maker() as db:
            totals = (
                await db.execute(
                    select(
                        func.count(FileRecord.id),
                        func.coalesce(func.sum(FileRecord.file_size_bytes), 0),
                        func.coalesce(func.sum(FileRecord.view_count), 0),
                    )
                )
            ).one()
            status_rows = await db.execute(
                select(FileRecord.processing_status, func.count(FileRecord.id)).group_by(FileRecord.processing_status)
            )
            projection_rows = await db.execute(
                select(FileRecord.is_360, func.count(FileRecord.id)).group_by(FileRecord.is_360)
            )
            event_rows = await db.execute(
                select(AnalyticsEvent.event_type, func.count(AnalyticsEvent.id))
                .where(AnalyticsEvent.created_at >= since)
                .group_by(AnalyticsEvent.event_type)
            )
            job_rows = await db.execute(
                select(TranscodingJob.status, func.count(TranscodingJob.id)).group_by(TranscodingJob.status)
            )
            active_sessions = (
                await db.execute(select(func.count(PlaybackSession.id)).where(PlaybackSession.is_active.is_(True)))
            ).scalar_one()
            top_rows = await db.execute(
                select(FileRecord.id, FileRecord.stored_key, FileRecord.original_name, FileRecord.view_count)
                .where(FileRecord.view_count > 0)
                .order_by(FileRecord.view_count.desc())
                .limit(max(int(top), 1))
            )

        total_files, total_size, total_views = totals
        return {
            "periodDays": max(int(days), 1),
            "totalFiles": int(total_files or 0),
            "totalSizeBytes": int(total_size or 0),
            "totalViews": int(total_views or 0),
            "filesByStatus": {status: int(count) for status, count in status_rows.all()},
            "files360": sum(int(count) for is_360, count in projection_rows.all() if is_360),
            "eventsByType": {event_type: int(count) for event_type, count in event_rows.all()},
            "transcodingJobsByStatus": {status: int(count) for status, count in job_rows.all()},
            "activeSessions": int(active_sessions or 0),
            "topFiles": [
                {"id": file_id, "fileName": key, "originalName": name, "viewCount": int(views or 0)}
                for file_id, key, name, views in top_rows.all()
            ],
        }

    # Recovery

    async def recover_stalled(self, cutoff: datetime) -> Tuple[int, int]:
        """Fail records and jobs left in flight by a previous process."""
        now = utcnow()
        async with self._session_maker() as db:
            records = await db.execute(
                update(FileRecord)
                .where(
                    FileRecord.processing_status == ProcessingStatus.PROCESSING.value,
                    func.coalesce(FileRecord.updated_at, FileRecord.created_at) < cutoff,
                )
                .values(
                    processing_status=ProcessingStatus.FAILED.value,
                    error_message="Processing was interrupted before it completed.",
                    updated_at=now,
                )
            )
            jobs = await db.execute(
                update(TranscodingJob)
                .where(
                    TranscodingJob.status.in_(ACTIVE_JOB_STATUSES),
                    func.coalesce(TranscodingJob.started_at, TranscodingJob.created_at) < cutoff,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message="Transcoding was interrupted. Request the quality again.",
                    completed_at=now,
                )
            )
            await db.commit()
        return int(records.rowcount or 0), int(jobs.rowcount or 0)
