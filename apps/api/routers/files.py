"""
Upload, signed URL, streaming and post-processing endpoints for stored videos.
"""

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import Response, StreamingResponse

from config import settings
from media_tools.transcoder import ExtractionError, TranscodeError, Transcoder, resolve_preset
from models.enums import EventType, JobStatus, ProcessingStatus
from models.file_record import FileRecord
from routers.deps import (
    get_processor,
    get_repository,
    get_store,
    get_transcoder,
    require_feature,
    require_repository,
)
from routers.rate_limit import client_address, rate_limit
from routers.schemas import (
    BulkSignedUrlRequest,
    GenerateUploadUrlRequest,
    ThumbnailRequest,
    TranscodeRequest,
    serialize_file_record,
    serialize_job,
)
from services.errors import (
    ConflictError,
    NotFoundError,
    ServiceBusy,
    UpstreamError,
    ValidationError,
)
from services.processing import MediaProcessor, thumbnail_key_for
from services.repository import MetadataRepository, best_effort
from services.storage import ObjectStore
from services.streaming import RangeNotSatisfiable, parse_range_header, resolve_quality_key
from services.uploads import (
    generate_stored_key,
    parse_tags,
    sanitize_filename,
    validate_video_upload,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _upload_size(upload: UploadFile) -> int:
    size = getattr(upload, "size", None)
    if size is not None:
        return int(size)
    handle = upload.file
    position = handle.tell()
    handle.seek(0, os.SEEK_END)
    size = handle.tell()
    handle.seek(position)
    return int(size)


def _ttl_minutes(requested: Optional[int]) -> int:
    minutes = int(requested or settings.SIGNED_URL_DEFAULT_MINUTES)
    return max(1, min(minutes, int(settings.SIGNED_URL_MAX_MINUTES)))


async def _lookup_record(repository: Optional[MetadataRepository], key: str) -> Optional[FileRecord]:
    if repository is None:
        return None
    return await best_effort("get_file_by_key", repository.get_file_by_key(key))


async def _resolve_target(
    store: ObjectStore,
    repository: Optional[MetadataRepository],
    key: str,
    quality: Optional[str],
):
    """Return (record, target key, object info); falls back to the original when a rendition is missing."""
    record = await _lookup_record(repository, key)
    target = resolve_quality_key(key, record, quality)
    info = await store.stat(target)
    if info is None and target != key:
        logger.warning("Rendition %s missing from storage, serving original %s", target, key)
        target = key
        info = await store.stat(key)
    if info is None:
        raise NotFoundError("File not found")
    return record, target, info


async def _signed_url_for(store: ObjectStore, key: str, action: str, minutes: int) -> str:
    info = await store.stat(key)
    if info is None:
        raise NotFoundError("File not found")
    content_type = (info.content_type or "application/octet-stream") if action == "write" else None
    return await store.generate_access_url(key, action=action, ttl_minutes=minutes, content_type=content_type)


async def _count_view(
    repository: Optional[MetadataRepository],
    record: Optional[FileRecord],
    session_id: Optional[str],
    request: Request,
    quality: Optional[str],
) -> None:
    if repository is None or record is None:
        return
    await best_effort("record_view", repository.record_view(record.id))
    if not session_id or not settings.ENABLE_ANALYTICS:
        return
    await best_effort(
        "record_event",
        repository.record_event(
            file_id=record.id,
            session_id=session_id,
            event_type=EventType.VIEW_START.value,
            video_time=0.0,
            quality=quality,
            user_agent=request.headers.get("user-agent"),
            ip_address=client_address(request),
        ),
    )
    await best_effort("touch_session", repository.touch_session(session_id))


@router.get("")
async def list_files(
    prefix: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=1000),
    page_token: Optional[str] = Query(default=None, alias="pageToken"),
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """List bucket objects enriched with their metadata records."""
    page = await store.list_objects(prefix=prefix or "", limit=limit, page_token=page_token)
    records = {}
    if repository is not None:
        records = await best_effort("find_by_keys", repository.find_by_keys(item.key for item in page.items)) or {}

    files = []
    for item in page.items:
        entry = item.to_dict()
        record = records.get(item.key)
        entry["record"] = serialize_file_record(record) if record else None
        files.append(entry)

    return {
        "files": files,
        "summary": {
            "totalFiles": len(files),
            "totalSize": sum(item.size for item in page.items),
            "withMetadata": sum(1 for entry in files if entry["record"]),
        },
        "prefix": prefix or "",
        "nextPageToken": page.next_page_token,
    }


@router.post("/upload", dependencies=[Depends(rate_limit("upload"))])
async def upload_file(
    file: UploadFile = File(...),
    quality: Optional[str] = Form(default=None),
    user_id: Optional[str] = Form(default=None, alias="userId"),
    tags: Optional[str] = Form(default=None),
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
    processor: MediaProcessor = Depends(get_processor),
):
    """Upload a video through the gateway and schedule post-processing."""
    try:
        size = _upload_size(file)
        content_type = validate_video_upload(file.content_type, size)
        original_name = os.path.basename(file.filename or "") or "upload.mp4"
        stored_key = generate_stored_key(original_name)

        file.file.seek(0)
        await store.write_stream(
            stored_key,
            file.file,
            content_type,
            {"originalName": sanitize_filename(original_name), "uploadedBy": user_id},
        )
    finally:
        await file.close()
    logger.info("Stored upload %s (%s bytes)", stored_key, size)

    record: Optional[FileRecord] = None
    if repository is not None:
        record = await best_effort(
            "create_file_record",
            repository.create_file_record(
                stored_key=stored_key,
                original_name=original_name,
                file_size_bytes=size,
                mime_type=content_type,
                bucket_name=store.bucket_name,
                uploader_id=user_id,
                tags=parse_tags(tags),
            ),
        )

    processing_scheduled = False
    transcode_job_id = None
    if repository is not None and record is not None:
        processing_scheduled = processor.submit_processing(record.id)
        label = (quality or "").strip().lower()
        if label and settings.ENABLE_TRANSCODING:
            created = await best_effort("create_transcoding_job", repository.create_transcoding_job(record.id, label))
            if created is not None:
                job, is_new = created
                if not is_new or processor.submit_transcode(job.id):
                    transcode_job_id = job.id
                else:
                    await best_effort(
                        "transition_job",
                        repository.transition_job(
                            job.id,
                            [JobStatus.QUEUED.value],
                            JobStatus.FAILED,
                            error_message="Processing queue is full",
                            completed_at=datetime.now(timezone.utc),
                        ),
                    )

    return {
        "message": "File uploaded successfully",
        "file": {
            "id": record.id if record else None,
            "fileName": stored_key,
            "path": stored_key,
            "originalName": original_name,
            "size": size,
            "mimeType": content_type,
            "processingStatus": ProcessingStatus.PENDING.value,
            "processingScheduled": processing_scheduled,
            "transcodeJobId": transcode_job_id,
            "persisted": record is not None,
        },
    }


@router.post("/generate-upload-url", dependencies=[Depends(rate_limit("upload_url"))])
async def generate_upload_url(
    request: GenerateUploadUrlRequest,
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """Issue a write-capable signed URL for a direct client upload."""
    content_type = validate_video_upload(request.file_type, request.file_size)
    stored_key = generate_stored_key(request.file_name)
    ttl = _ttl_minutes(settings.UPLOAD_URL_TTL_MINUTES)
    max_bytes = int(settings.MAX_UPLOAD_BYTES)
    upload_url = await store.generate_access_url(
        stored_key,
        action="write",
        ttl_minutes=ttl,
        content_type=content_type,
        max_bytes=max_bytes,
    )

    record: Optional[FileRecord] = None
    if repository is not None:
        record = await best_effort(
            "create_file_record",
            repository.create_file_record(
                stored_key=stored_key,
                original_name=os.path.basename(request.file_name),
                file_size_bytes=request.file_size,
                mime_type=content_type,
                bucket_name=store.bucket_name,
                uploader_id=request.user_id,
                tags=[tag.strip() for tag in request.tags if tag.strip()],
            ),
        )

    return {
        "uploadUrl": upload_url,
        "fileName": stored_key,
        "fileId": record.id if record else None,
        "method": "PUT",
        "headers": {
            "Content-Type": content_type,
            "x-goog-content-length-range": f"0,{max_bytes}",
        },
        "expiresIn": f"{ttl} minutes",
        "processingStatus": ProcessingStatus.PENDING.value,
    }


@router.post("/bulk-signed-urls", dependencies=[Depends(rate_limit("bulk_signed_urls"))])
async def bulk_signed_urls(
    request: BulkSignedUrlRequest,
    store: ObjectStore = Depends(get_store),
):
    """Sign many keys at once; missing keys are reported individually."""
    minutes = _ttl_minutes(request.expires_in_minutes)
    results = await asyncio.gather(
        *(_signed_url_for(store, name, request.action, minutes) for name in request.file_names),
        return_exceptions=True,
    )

    successful = []
    failed = []
    for name, result in zip(request.file_names, results):
        if isinstance(result, NotFoundError):
            failed.append({"fileName": name, "error": f"File {name} not found"})
        elif isinstance(result, Exception):
            logger.warning("Bulk signing failed for %s: %s", name, result)
            failed.append({"fileName": name, "error": "Failed to generate signed URL"})
        else:
            successful.append({"fileName": name, "signedUrl": result})

    return {
        "successful": successful,
        "failed": failed,
        "summary": {
            "total": len(request.file_names),
            "successful": len(successful),
            "failed": len(failed),
        },
        "expiresIn": f"{minutes} minutes",
        "action": request.action,
    }


@router.get("/{key:path}/signed-url")
async def get_signed_url(
    key: str,
    expires_in_minutes: Optional[int] = Query(default=None, alias="expiresInMinutes", ge=1),
    action: Literal["read", "write"] = Query(default="read"),
    quality: Optional[str] = Query(default=None),
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """Return a signed URL for an existing object (or its requested rendition)."""
    _, target, info = await _resolve_target(store, repository, key, quality)
    minutes = _ttl_minutes(expires_in_minutes)
    content_type = (info.content_type or "application/octet-stream") if action == "write" else None
    signed_url = await store.generate_access_url(target, action=action, ttl_minutes=minutes, content_type=content_type)
    return {
        "signedUrl": signed_url,
        "fileName": target,
        "requestedFile": key,
        "quality": quality if target != key else None,
        "expiresIn": f"{minutes} minutes",
        "action": action,
    }


@router.get("/{key:path}/stream", dependencies=[Depends(require_feature("streaming"))])
async def stream_file(
    key: str,
    request: Request,
    quality: Optional[str] = Query(default=None),
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """Serve the object body, honouring a single byte range."""
    record, target, info = await _resolve_target(store, repository, key, quality)
    size = int(info.size)
    media_type = info.content_type or "application/octet-stream"
    headers = {"Accept-Ranges": "bytes", "Cache-Control": "private, max-age=0"}

    try:
        byte_range = parse_range_header(request.headers.get("range"), size)
    except RangeNotSatisfiable:
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
        )

    if byte_range is None or byte_range.start == 0:
        session = session_id or request.headers.get("x-session-id")
        await _count_view(repository, record, session, request, quality if target != key else None)

    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(store.iter_range(target), status_code=200, media_type=media_type, headers=headers)

    headers["Content-Range"] = byte_range.content_range(size)
    headers["Content-Length"] = str(byte_range.length)
    return StreamingResponse(
        store.iter_range(target, byte_range.start, byte_range.end),
        status_code=206,
        media_type=media_type,
        headers=headers,
    )


@router.get("/{key:path}/metadata")
async def get_file_metadata(
    key: str,
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """Merge object store metadata with the database record, when there is one."""
    info = await store.stat(key)
    if info is None:
        raise NotFoundError("File not found")

    payload = info.to_dict()
    payload["fileName"] = key
    payload["record"] = None
    if repository is None:
        payload["database"] = "not_configured"
        return payload

    record = await _lookup_record(repository, key)
    payload["database"] = "connected"
    if record is not None:
        payload["record"] = serialize_file_record(record)
    return payload


@router.post("/{key:path}/process")
async def trigger_processing(
    key: str,
    store: ObjectStore = Depends(get_store),
    repository: MetadataRepository = Depends(require_repository),
    processor: MediaProcessor = Depends(get_processor),
):
    """Schedule metadata extraction for a pending record, e.g. after a signed-URL upload."""
    if not await store.exists(key):
        raise NotFoundError("File not found")
    record = await repository.get_file_by_key(key)
    if record is None:
        raise NotFoundError("File record not found")
    if record.processing_status != ProcessingStatus.PENDING.value:
        raise ConflictError(f"File is already {record.processing_status}")
    if not processor.submit_processing(record.id):
        raise ServiceBusy("Processing queue is full, try again later")
    return {
        "fileId": record.id,
        "fileName": key,
        "processingStatus": record.processing_status,
        "scheduled": True,
    }


@router.post("/{key:path}/transcode", dependencies=[Depends(require_feature("transcoding"))])
async def request_transcode(
    key: str,
    request: TranscodeRequest,
    store: ObjectStore = Depends(get_store),
    repository: MetadataRepository = Depends(require_repository),
    processor: MediaProcessor = Depends(get_processor),
):
    """Queue a quality rendition; an already available quality is returned as-is."""
    quality = request.quality.strip().lower()
    if not quality:
        raise ValidationError("quality is required")

    record = await repository.get_file_by_key(key)
    if record is None:
        if not await store.exists(key):
            raise NotFoundError("File not found")
        raise NotFoundError("File record not found")

    if quality in record.qualities:
        return {
            "message": "Quality already available",
            "jobId": None,
            "quality": quality,
            "status": JobStatus.COMPLETED.value,
            "fileName": record.qualities[quality],
        }

    if not await store.exists(key):
        raise NotFoundError("File not found")

    job, created = await repository.create_transcoding_job(record.id, quality)
    if created and not processor.submit_transcode(job.id):
        await repository.transition_job(
            job.id,
            [JobStatus.QUEUED.value],
            JobStatus.FAILED,
            error_message="Processing queue is full",
            completed_at=datetime.now(timezone.utc),
        )
        raise ServiceBusy("Processing queue is full, try again later")

    preset = resolve_preset(quality)
    return {
        "message": "Transcoding queued" if created else "Transcoding already in progress",
        "jobId": job.id,
        "quality": quality,
        "status": job.status,
        "preset": {
            "label": preset.label,
            "width": preset.width,
            "height": preset.height,
            "bitrateKbps": preset.bitrate_kbps,
            "crf": preset.crf,
        },
    }


@router.get("/{key:path}/transcode-jobs")
async def list_transcode_jobs(
    key: str,
    repository: MetadataRepository = Depends(require_repository),
):
    record = await repository.get_file_by_key(key)
    if record is None:
        raise NotFoundError("File record not found")
    jobs = await repository.list_jobs_for_file(record.id)
    return {"fileId": record.id, "fileName": key, "qualities": record.qualities, "jobs": [serialize_job(job) for job in jobs]}


@router.post("/{key:path}/thumbnail", dependencies=[Depends(require_feature("thumbnails"))])
async def create_thumbnail(
    key: str,
    request: Optional[ThumbnailRequest] = None,
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
    transcoder: Transcoder = Depends(get_transcoder),
):
    """Extract a frame, store it next to the video and return a read URL for it."""
    offset = float(request.time_offset if request is not None else settings.DEFAULT_THUMBNAIL_OFFSET_SECONDS)
    if not await store.exists(key):
        raise NotFoundError("File not found")

    record = await _lookup_record(repository, key)
    duration = record.duration_seconds if record is not None else None
    source_url = await store.generate_access_url(key, action="read", ttl_minutes=settings.PROBE_URL_TTL_MINUTES)
    try:
        image = await asyncio.to_thread(transcoder.thumbnail, source_url, offset, duration)
    except ExtractionError as exc:
        raise ValidationError(str(exc)) from exc
    except TranscodeError as exc:
        raise UpstreamError("Thumbnail extraction failed", detail=str(exc)) from exc

    thumbnail_key = thumbnail_key_for(key, offset)
    await store.write_bytes(thumbnail_key, image, "image/jpeg", {"source": key, "timeOffset": f"{offset:g}"})
    if repository is not None and record is not None:
        await best_effort("set_thumbnail", repository.set_thumbnail(record.id, thumbnail_key))

    minutes = _ttl_minutes(settings.SIGNED_URL_DEFAULT_MINUTES)
    thumbnail_url = await store.generate_access_url(thumbnail_key, action="read", ttl_minutes=minutes)
    return {
        "thumbnailUrl": thumbnail_url,
        "thumbnailKey": thumbnail_key,
        "fileName": key,
        "timeOffset": offset,
        "expiresIn": f"{minutes} minutes",
    }


@router.delete("/{key:path}")
async def delete_file(
    key: str,
    store: ObjectStore = Depends(get_store),
    repository: Optional[MetadataRepository] = Depends(get_repository),
):
    """Remove an object, its derived assets and its record."""
    if not await store.exists(key):
        raise NotFoundError("File not found")

    record = await _lookup_record(repository, key)
    derived = []
    if record is not None:
        derived = [k for k in [record.thumbnail_key, *record.qualities.values()] if k]

    await store.delete(key)
    for derived_key in derived:
        await store.delete(derived_key)
    if repository is not None:
        await best_effort("delete_file_by_key", repository.delete_file_by_key(key))

    return {"message": f"File {key} deleted successfully", "deletedAssets": derived}
