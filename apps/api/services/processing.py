"""In-process background pipeline for post-upload processing and transcoding."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

from config import settings
from media_tools.inspector import MediaInspector, ProbeError, ProbeResult, classify_360
from media_tools.transcoder import ExtractionError, TranscodeError, Transcoder
from models.enums import JobStatus, ProcessingStatus
from services.errors import ProcessingFailure
from services.repository import MetadataRepository
from services.storage import ObjectStore
from services.uploads import derived_key

logger = logging.getLogger(__name__)

SOURCE_SLOT = "source"


@dataclass(frozen=True)
class WorkItem:
    kind: str  # "process" | "transcode"
    target_id: str


def thumbnail_key_for(stored_key: str, time_offset: float) -> str:
    return derived_key(settings.THUMBNAIL_PREFIX, stored_key, f"{int(round(time_offset * 1000))}ms.jpg")


def rendition_key_for(stored_key: str, quality: str) -> str:
    return derived_key(settings.TRANSCODE_PREFIX, stored_key, f"{quality}.mp4")


class MediaProcessor:
    """Bounded work queue drained by a fixed number of worker tasks.

    Submissions never block the request path. Work for the same
    (file, quality) slot is serialized by a lock, and the repository's
    conditional status updates reject duplicates that slip past it.
    """

    def __init__(
        self,
        store: ObjectStore,
        repository: Optional[MetadataRepository],
        inspector: MediaInspector,
        transcoder: Transcoder,
        *,
        workers: int = 2,
        queue_size: int = 100,
    ):
        self.store = store
        self.repository = repository
        self.inspector = inspector
        self.transcoder = transcoder
        self._worker_count = max(int(workers), 1)
        self._queue: "asyncio.Queue[WorkItem]" = asyncio.Queue(maxsize=max(int(queue_size), 1))
        self._workers: List[asyncio.Task] = []
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"media-worker-{index}")
            for index in range(self._worker_count)
        ]

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

    async def drain(self) -> None:
        """Wait until every submitted item has been handled."""
        await self._queue.join()

    def submit_processing(self, file_id: str) -> bool:
        return self._submit(WorkItem("process", file_id))

    def submit_transcode(self, job_id: str) -> bool:
        return self._submit(WorkItem("transcode", job_id))

    def _submit(self, item: WorkItem) -> bool:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Processing queue full, dropping %s for %s", item.kind, item.target_id)
            return False
        return True

    async def requeue_queued_jobs(self) -> Tuple[int, int]:
        """Re-submit jobs a previous process left queued.

        Jobs that no longer fit in the queue are failed so their quality can
        be requested again. Returns ``(requeued, failed)``.
        """
        repository = self.repository
        if repository is None:
            return 0, 0
        requeued = failed = 0
        for job_id in await repository.list_queued_job_ids():
            if self.submit_transcode(job_id):
                requeued += 1
                continue
            dropped = await repository.transition_job(
                job_id,
                [JobStatus.QUEUED.value],
                JobStatus.FAILED,
                error_message="Processing queue is full",
                completed_at=datetime.now(timezone.utc),
            )
            if dropped:
                failed += 1
        return requeued, failed

    @asynccontextmanager
    async def _slot(self, file_id: str, slot: str) -> AsyncIterator[None]:
        """Hold the lock for one (file, slot) pair; the entry is dropped once unused."""
        key = (file_id, slot)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item.kind == "process":
                    await self.process_upload(item.target_id)
                elif item.kind == "transcode":
                    await self.run_transcode(item.target_id)
                else:
                    logger.error("Worker %s got unknown work item %s", index, item)
            except Exception:
                logger.exception("Worker %s failed on %s %s", index, item.kind, item.target_id)
            finally:
                self._queue.task_done()

    # Pipelines

    async def process_upload(self, file_id: str) -> None:
        """Probe, classify and thumbnail one uploaded file.

        Only a source that cannot be read at all fails the record; probe and
        thumbnail problems are logged and the record still completes.
        """
        repository = self.repository
        if repository is None:
            logger.info("No repository configured, skipping processing for %s", file_id)
            return

        async with self._slot(file_id, SOURCE_SLOT):
            claimed = await repository.transition_status(
                file_id, [ProcessingStatus.PENDING.value], ProcessingStatus.PROCESSING
            )
            if not claimed:
                logger.info("File %s is not pending, skipping processing", file_id)
                return

            record = await repository.get_file(file_id)
            if record is None:
                return

            try:
                if not await self.store.exists(record.stored_key):
                    raise ProcessingFailure(f"Source object {record.stored_key} is not readable")
                source_url = await self.store.generate_access_url(
                    record.stored_key, action="read", ttl_minutes=settings.PROBE_URL_TTL_MINUTES
                )
            except Exception as exc:
                logger.exception("Processing of %s could not start: %s", file_id, exc)
                await repository.transition_status(
                    file_id,
                    [ProcessingStatus.PROCESSING.value],
                    ProcessingStatus.FAILED,
                    error_message=str(exc)[:2000],
                )
                return

            fields: Dict[str, object] = {}
            probe: Optional[ProbeResult] = None
            try:
                probe = await asyncio.to_thread(self.inspector.probe, source_url)
            except ProbeError as exc:
                logger.warning("Probe failed for %s, metadata left empty: %s", record.stored_key, exc)
                fields["error_message"] = f"Metadata extraction failed: {exc}"[:2000]

            if probe is not None:
                classification = classify_360(probe.width, probe.height)
                fields.update(
                    duration_seconds=probe.duration_seconds,
                    width=probe.width,
                    height=probe.height,
                    resolution=probe.resolution,
                    frame_rate=probe.frame_rate,
                    bitrate=probe.bitrate,
                    codec=probe.codec,
                    has_audio=probe.has_audio,
                    is_360=classification.is_360,
                    projection=classification.projection.value,
                )

            if settings.ENABLE_THUMBNAILS:
                thumbnail_key = await self._extract_thumbnail(
                    record.stored_key, source_url, probe.duration_seconds if probe else None
                )
                if thumbnail_key:
                    fields["thumbnail_key"] = thumbnail_key

            completed = await repository.transition_status(
                file_id, [ProcessingStatus.PROCESSING.value], ProcessingStatus.COMPLETED, **fields
            )
            if completed:
                logger.info("Processing of %s completed", record.stored_key)

    async def _extract_thumbnail(
        self,
        stored_key: str,
        source_url: str,
        duration: Optional[float],
    ) -> Optional[str]:
        offset = float(settings.DEFAULT_THUMBNAIL_OFFSET_SECONDS)
        if duration is not None and offset >= duration:
            offset = max(duration / 2.0, 0.0)
        try:
            image = await asyncio.to_thread(self.transcoder.thumbnail, source_url, offset, duration)
            key = thumbnail_key_for(stored_key, offset)
            await self.store.write_bytes(key, image, "image/jpeg", {"source": stored_key})
            return key
        except (ExtractionError, TranscodeError) as exc:
            logger.warning("Thumbnail extraction failed for %s: %s", stored_key, exc)
        except Exception as exc:
            logger.warning("Thumbnail upload failed for %s: %s", stored_key, exc)
        return None

    async def run_transcode(self, job_id: str) -> None:
        """Run one queued transcoding job to completion or failure."""
        repository = self.repository
        if repository is None:
            logger.info("No repository configured, cannot run transcoding job %s", job_id)
            return

        job = await repository.get_job(job_id)
        if job is None:
            logger.warning("Transcoding job %s not found", job_id)
            return

        async with self._slot(job.file_id, job.quality):
            claimed = await repository.transition_job(
                job_id,
                [JobStatus.QUEUED.value],
                JobStatus.PROCESSING,
                started_at=datetime.now(timezone.utc),
                progress=0,
            )
            if not claimed:
                logger.info("Transcoding job %s already claimed, skipping", job_id)
                return

            output_path: Optional[str] = None
            try:
                record = await repository.get_file(job.file_id)
                if record is None:
                    raise ProcessingFailure(f"File record {job.file_id} no longer exists")
                if job.quality in record.qualities:
                    output_key = record.qualities[job.quality]
                    logger.info("Quality %s already present for %s", job.quality, record.stored_key)
                else:
                    source_url = await self.store.generate_access_url(
                        record.stored_key, action="read", ttl_minutes=settings.TRANSCODE_URL_TTL_MINUTES
                    )

                    def _log_progress(percent: int) -> None:
                        logger.info("Transcoding job %s: %s%%", job_id, percent)

                    result = await asyncio.to_thread(
                        self.transcoder.transcode,
                        source_url,
                        job.quality,
                        _log_progress,
                        record.duration_seconds,
                    )
                    output_path = result.output_path
                    output_key = rendition_key_for(record.stored_key, job.quality)
                    with open(output_path, "rb") as source:
                        await self.store.write_stream(
                            output_key,
                            source,
                            "video/mp4",
                            {
                                "source": record.stored_key,
                                "quality": job.quality,
                                "resolution": f"{result.width}x{result.height}",
                                "bitrate": str(result.bitrate or ""),
                            },
                        )
                    await repository.add_rendition(record.id, job.quality, output_key)

                await repository.transition_job(
                    job_id,
                    [JobStatus.PROCESSING.value],
                    JobStatus.COMPLETED,
                    output_key=output_key,
                    progress=100,
                    completed_at=datetime.now(timezone.utc),
                )
                logger.info("Transcoding job %s completed: %s", job_id, output_key)
            except Exception as exc:
                logger.exception("Transcoding job %s failed: %s", job_id, exc)
                await repository.transition_job(
                    job_id,
                    [JobStatus.PROCESSING.value],
                    JobStatus.FAILED,
                    error_message=str(exc) or exc.__class__.__name__,
                    completed_at=datetime.now(timezone.utc),
                )
            finally:
                if output_path and os.path.exists(output_path):
                    try:
                        os.unlink(output_path)
                    except OSError:
                        logger.warning("Could not cleanup temporary rendition %s", output_path)
