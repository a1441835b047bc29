"""Google Cloud Storage wrapper for signed URLs, ranged reads and streamed writes."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, BinaryIO, Dict, Iterator, List, Literal, Optional

from google.api_core import exceptions as gcs_exceptions
from google.cloud import storage

from services.errors import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024
MAX_SIGNED_URL_MINUTES = 7 * 24 * 60  # v4 signing ceiling

AccessAction = Literal["read", "write"]


@dataclass
class ObjectInfo:
    key: str
    size: int
    content_type: Optional[str] = None
    updated: Optional[datetime] = None
    md5_hash: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.key,
            "size": self.size,
            "contentType": self.content_type,
            "updated": self.updated.isoformat() if self.updated else None,
            "md5Hash": self.md5_hash,
            "metadata": dict(self.metadata or {}),
        }


@dataclass
class ObjectPage:
    items: List[ObjectInfo]
    next_page_token: Optional[str] = None


def _blob_info(blob: Any) -> ObjectInfo:
    return ObjectInfo(
        key=blob.name,
        size=int(blob.size or 0),
        content_type=blob.content_type,
        updated=blob.updated,
        md5_hash=blob.md5_hash,
        metadata=dict(blob.metadata or {}),
    )


class ObjectStore:
    """Stateless transport over one bucket.

    Blocking SDK calls are pushed to a worker thread so request handlers stay
    responsive. ``iter_range`` is a plain generator and is meant to be handed to
    ``StreamingResponse``, which iterates it in the threadpool.
    """

    def __init__(self, bucket_name: str, client: Optional[storage.Client] = None, project: Optional[str] = None):
        self.bucket_name = bucket_name
        self._client = client or storage.Client(project=project or None)
        self._bucket = self._client.bucket(bucket_name)

    async def exists(self, key: str) -> bool:
        def _exists() -> bool:
            try:
                return bool(self._bucket.blob(key).exists())
            except gcs_exceptions.NotFound:
                return False

        try:
            return await asyncio.to_thread(_exists)
        except gcs_exceptions.GoogleAPIError as exc:
            raise UpstreamError("Storage request failed", detail=f"exists({key}): {exc}") from exc

    async def generate_access_url(
        self,
        key: str,
        action: AccessAction = "read",
        ttl_minutes: int = 60,
        content_type: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> str:
        """Return a v4 signed URL granting ``action`` on one object for ``ttl_minutes``."""
        if action not in ("read", "write"):
            raise ValidationError("action must be 'read' or 'write'")
        if action == "write" and not content_type:
            raise ValidationError("contentType is required for write URLs")
        minutes = max(1, min(int(ttl_minutes or 60), MAX_SIGNED_URL_MINUTES))

        options: Dict[str, Any] = {
            "version": "v4",
            "expiration": timedelta(minutes=minutes),
            "method": "PUT" if action == "write" else "GET",
        }
        if action == "write":
            options["content_type"] = content_type
            if max_bytes:
                options["headers"] = {"x-goog-content-length-range": f"0,{int(max_bytes)}"}

        try:
            return await asyncio.to_thread(self._bucket.blob(key).generate_signed_url, **options)
        except (gcs_exceptions.GoogleAPIError, ValueError, AttributeError) as exc:
            # AttributeError: credentials without a signing key (e.g. user ADC)
            raise UpstreamError("Failed to generate signed URL", detail=str(exc)) from exc

    async def stat(self, key: str) -> Optional[ObjectInfo]:
        try:
            blob = await asyncio.to_thread(self._bucket.get_blob, key)
        except gcs_exceptions.NotFound:
            return None
        except gcs_exceptions.GoogleAPIError as exc:
            raise UpstreamError("Storage request failed", detail=f"stat({key}): {exc}") from exc
        return _blob_info(blob) if blob is not None else None

    def iter_range(
        self,
        key: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> Iterator[bytes]:
        """Yield the bytes of ``key`` between ``start`` and ``end`` (inclusive).

        Without a range the whole object is read. ``end`` must be known for ranged
        reads of unknown length, so callers stat the object first.
        """
        blob = self._bucket.blob(key)
        if start is None and end is None:
            with blob.open("rb", chunk_size=chunk_size) as reader:
                while True:
                    chunk = reader.read(chunk_size)
                    if not chunk:
                        break
                    yield chunk
            return

        position = int(start or 0)
        if end is None:
            info = _blob_info(self._bucket.get_blob(key))
            end = info.size - 1
        while position <= end:
            chunk_end = min(position + chunk_size - 1, end)
            chunk = blob.download_as_bytes(start=position, end=chunk_end)
            if not chunk:
                break
            yield chunk
            position += len(chunk)

    def open_writer(self, key: str, content_type: Optional[str], metadata: Optional[Dict[str, str]] = None):
        """Return a writable sink; the object only becomes visible when it closes cleanly."""
        blob = self._bucket.blob(key)
        if metadata:
            blob.metadata = {str(k): str(v) for k, v in metadata.items() if v is not None}
        return blob.open("wb", content_type=content_type or "application/octet-stream")

    async def write_stream(
        self,
        key: str,
        source: BinaryIO,
        content_type: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectInfo:
        def _copy() -> None:
            with self.open_writer(key, content_type, metadata) as sink:
                shutil.copyfileobj(source, sink, DEFAULT_CHUNK_SIZE)

        try:
            await asyncio.to_thread(_copy)
        except gcs_exceptions.GoogleAPIError as exc:
            raise UpstreamError("Upload failed", detail=f"write({key}): {exc}") from exc
        info = await self.stat(key)
        if info is None:
            raise UpstreamError("Upload failed", detail=f"{key} missing after upload")
        return info

    async def write_bytes(
        self,
        key: str,
        data: bytes,
        content_type: Optional[str],
        metadata: Optional[Dict[str, str]] = None,
    ) -> None:
        def _upload() -> None:
            blob = self._bucket.blob(key)
            if metadata:
                blob.metadata = {str(k): str(v) for k, v in metadata.items() if v is not None}
            blob.upload_from_string(data, content_type=content_type or "application/octet-stream")

        try:
            await asyncio.to_thread(_upload)
        except gcs_exceptions.GoogleAPIError as exc:
            raise UpstreamError("Upload failed", detail=f"write({key}): {exc}") from exc

    async def list_objects(self, prefix: str = "", limit: int = 100, page_token: Optional[str] = None) -> ObjectPage:
        def _list() -> ObjectPage:
            blobs_iter = self._client.list_blobs(
                self.bucket_name,
                prefix=prefix or None,
                max_results=max(1, int(limit)),
                page_token=page_token or None,
            )
            items = [_blob_info(blob) for blob in blobs_iter if blob.name and not blob.name.endswith("/")]
            return ObjectPage(items=items, next_page_token=getattr(blobs_iter, "next_page_token", None))

        try:
            return await asyncio.to_thread(_list)
        except gcs_exceptions.GoogleAPIError as exc:
            raise UpstreamError("Failed to list files", detail=str(exc)) from exc

    async def delete(self, key: str) -> None:
        def _delete() -> None:
            try:
                self._bucket.blob(key).delete()
            except gcs_exceptions.NotFound:
                logger.info("Delete of missing object %s ignored", key)

        try:
            await asyncio.to_thread(_delete)
        except gcs_exceptions.GoogleAPIError as exc:
            raise UpstreamError("Failed to delete file", detail=f"delete({key}): {exc}") from exc
