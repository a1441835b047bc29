import os
import tempfile
from datetime import datetime, timezone
from typing import Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import create_engine, create_session_maker
from main import app
from media_tools.inspector import ProbeError, ProbeResult
from media_tools.transcoder import ExtractionError, TranscodeError, TranscodeResult, resolve_preset
from routers import rate_limit
from routers.deps import get_processor, get_repository, get_store, get_transcoder
from services.errors import UpstreamError
from services.processing import MediaProcessor
from services.repository import MetadataRepository
from services.storage import ObjectInfo, ObjectPage


class InMemoryObjectStore:
    """Object store double keeping whole objects in a dict."""

    def __init__(self, bucket_name: str = "test-bucket"):
        self.bucket_name = bucket_name
        self.objects: Dict[str, Dict] = {}
        self.signed: list = []
        self.fail_writes = False

    def put(self, key: str, data: bytes, content_type: str = "video/mp4", metadata: Optional[dict] = None):
        self.objects[key] = {
            "data": bytes(data),
            "content_type": content_type,
            "metadata": dict(metadata or {}),
            "updated": datetime.now(timezone.utc),
        }

    def _info(self, key: str) -> ObjectInfo:
        entry = self.objects[key]
        return ObjectInfo(
            key=key,
            size=len(entry["data"]),
            content_type=entry["content_type"],
            updated=entry["updated"],
            metadata=entry["metadata"],
        )

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def generate_access_url(self, key, action="read", ttl_minutes=60, content_type=None, max_bytes=None):
        self.signed.append({"key": key, "action": action, "ttl": ttl_minutes, "content_type": content_type})
        return f"https://storage.test/{self.bucket_name}/{key}?action={action}&ttl={ttl_minutes}"

    async def stat(self, key: str) -> Optional[ObjectInfo]:
        return self._info(key) if key in self.objects else None

    def iter_range(self, key, start=None, end=None, chunk_size=64):
        data = self.objects[key]["data"]
        if start is None and end is None:
            start, end = 0, len(data) - 1
        position = int(start or 0)
        while position <= end:
            chunk = data[position:min(position + chunk_size, end + 1)]
            if not chunk:
                break
            yield chunk
            position += len(chunk)

    async def write_stream(self, key, source, content_type, metadata=None) -> ObjectInfo:
        if self.fail_writes:
            raise UpstreamError("Upload failed", detail="write disabled")
        self.put(key, source.read(), content_type, {k: str(v) for k, v in (metadata or {}).items() if v is not None})
        return self._info(key)

    async def write_bytes(self, key, data, content_type, metadata=None) -> None:
        if self.fail_writes:
            raise UpstreamError("Upload failed", detail="write disabled")
        self.put(key, data, content_type, metadata)

    async def list_objects(self, prefix="", limit=100, page_token=None) -> ObjectPage:
        keys = sorted(key for key in self.objects if key.startswith(prefix or ""))
        offset = int(page_token or 0)
        page = keys[offset:offset + limit]
        next_token = str(offset + limit) if offset + limit < len(keys) else None
        return ObjectPage(items=[self._info(key) for key in page], next_page_token=next_token)

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class FakeInspector:
    """Returns a fixed 2:1 probe result unless told to fail."""

    def __init__(self, width: int = 3840, height: int = 1920, duration: float = 12.5):
        self.result = ProbeResult(
            duration_seconds=duration,
            width=width,
            height=height,
            frame_rate=30.0,
            bitrate=8_000_000,
            codec="h264",
            has_audio=True,
        )
        self.error: Optional[str] = None
        self.calls = []

    def probe(self, url: str) -> ProbeResult:
        self.calls.append(url)
        if self.error:
            raise ProbeError(self.error)
        return self.result


class FakeTranscoder:
    """Writes a small placeholder rendition file instead of running ffmpeg."""

    def __init__(self):
        self.transcode_calls = []
        self.thumbnail_calls = []
        self.transcode_error: Optional[str] = None

    def thumbnail(self, source_url: str, time_offset: float = 1.0, duration: Optional[float] = None) -> bytes:
        self.thumbnail_calls.append((source_url, time_offset, duration))
        if time_offset < 0 or (duration is not None and time_offset > duration):
            raise ExtractionError(f"timeOffset {time_offset:g}s exceeds video duration")
        return b"\xff\xd8fake-jpeg\xff\xd9"

    def transcode(self, source_url, quality, on_progress=None, duration=None) -> TranscodeResult:
        self.transcode_calls.append((source_url, quality))
        if self.transcode_error:
            raise TranscodeError(self.transcode_error)
        preset = resolve_preset(quality)
        fd, path = tempfile.mkstemp(suffix=".mp4")
        with os.fdopen(fd, "wb") as handle:
            handle.write(b"rendition-" + preset.label.encode())
        if on_progress is not None:
            on_progress(100)
        return TranscodeResult(
            output_path=path,
            width=preset.width,
            height=preset.height,
            bitrate=preset.bitrate_kbps * 1000,
            preset=preset,
        )


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def store():
    return InMemoryObjectStore()


@pytest.fixture
def inspector():
    return FakeInspector()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest_asyncio.fixture
async def repository(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")
    repo = MetadataRepository(create_session_maker(engine), engine)
    await repo.create_schema()
    yield repo
    await repo.dispose()


async def _client_for(store, repository, processor, transcoder):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_processor] = lambda: processor
    app.dependency_overrides[get_transcoder] = lambda: transcoder
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _clear_overrides():
    for dependency in (get_store, get_repository, get_processor, get_transcoder):
        app.dependency_overrides.pop(dependency, None)


@pytest_asyncio.fixture
async def gateway(store, repository, inspector, transcoder):
    """Client wired to a SQLite repository and a running in-process processor."""
    processor = MediaProcessor(store, repository, inspector, transcoder, workers=2, queue_size=10)
    await processor.start()
    client = await _client_for(store, repository, processor, transcoder)
    async with client:
        yield client, processor
    await processor.stop()
    _clear_overrides()


@pytest_asyncio.fixture
async def storage_only_client(store, inspector, transcoder):
    """Client with no repository configured."""
    processor = MediaProcessor(store, None, inspector, transcoder, workers=1, queue_size=10)
    await processor.start()
    client = await _client_for(store, None, processor, transcoder)
    async with client:
        yield client
    await processor.stop()
    _clear_overrides()


@pytest_asyncio.fixture
async def idle_gateway(store, repository, inspector, transcoder):
    """Client whose processor has a single queue slot and no workers until the test starts them."""
    processor = MediaProcessor(store, repository, inspector, transcoder, workers=1, queue_size=1)
    client = await _client_for(store, repository, processor, transcoder)
    async with client:
        yield client, processor
    await processor.stop()
    _clear_overrides()
