"""FastAPI dependencies exposing the process-scoped collaborators built in main.lifespan."""

from typing import Optional

from fastapi import Depends, Request

from config import settings
from media_tools.transcoder import Transcoder
from services.errors import FeatureDisabled, RepositoryUnavailable
from services.processing import MediaProcessor
from services.repository import MetadataRepository
from services.storage import ObjectStore


def get_store(request: Request) -> ObjectStore:
    return request.app.state.store


def get_repository(request: Request) -> Optional[MetadataRepository]:
    """The metadata repository, or None in storage-only mode."""
    return getattr(request.app.state, "repository", None)


def require_repository(
    repository: Optional[MetadataRepository] = Depends(get_repository),
) -> MetadataRepository:
    if repository is None:
        raise RepositoryUnavailable("Database not configured")
    return repository


def get_processor(request: Request) -> MediaProcessor:
    return request.app.state.processor


def get_transcoder(request: Request) -> Transcoder:
    return request.app.state.transcoder


def require_feature(name: str):
    """Dependency factory answering 503 while a feature toggle is off."""

    def _dependency() -> None:
        if not settings.feature_flags.get(name, False):
            raise FeatureDisabled(f"{name.capitalize()} is disabled")

    return _dependency
