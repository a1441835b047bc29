"""
Transcoding job status polling.
"""

from fastapi import APIRouter, Depends

from routers.deps import require_repository
from routers.schemas import serialize_job
from services.errors import NotFoundError
from services.repository import MetadataRepository

router = APIRouter()


@router.get("/{job_id}")
async def get_transcode_job(
    job_id: str,
    repository: MetadataRepository = Depends(require_repository),
):
    job = await repository.get_job(job_id)
    if job is None:
        raise NotFoundError("Transcoding job not found")
    return serialize_job(job)
