"""
Direct read access to persisted file records.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from routers.deps import require_repository
from routers.schemas import serialize_file_record, serialize_job
from services.errors import NotFoundError
from services.repository import MetadataRepository

router = APIRouter()


@router.get("/files")
async def list_records(
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    prefix: Optional[str] = Query(default=None),
    repository: MetadataRepository = Depends(require_repository),
):
    records = await repository.list_files(limit=limit, offset=offset, prefix=prefix)
    total = await repository.count_files(prefix=prefix)
    return {
        "files": [serialize_file_record(record) for record in records],
        "pagination": {
            "total": total,
            "limit": limit,
            "offset": offset,
            "hasMore": offset + len(records) < total,
        },
    }


@router.get("/files/{file_id}")
async def get_record(
    file_id: str,
    repository: MetadataRepository = Depends(require_repository),
):
    """One record with its transcoding history."""
    record = await repository.get_file(file_id)
    if record is None:
        raise NotFoundError("File record not found")
    payload = serialize_file_record(record)
    payload["transcodingJobs"] = [serialize_job(job) for job in await repository.list_jobs_for_file(record.id)]
    return payload
