import io
import re
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from google.api_core import exceptions as gcs_exceptions

from services.errors import UpstreamError, ValidationError
from services.storage import ObjectStore
from services.uploads import (
    derived_key,
    generate_stored_key,
    parse_tags,
    sanitize_filename,
    validate_video_upload,
)


def _store():
    client = MagicMock()
    bucket = client.bucket.return_value
    return ObjectStore("duovr-test", client=client), client, bucket


def _blob(name="360-videos/a.mp4", size=1000, content_type="video/mp4"):
    blob = MagicMock()
    blob.name = name
    blob.size = size
    blob.content_type = content_type
    blob.updated = None
    blob.md5_hash = "abc=="
    blob.metadata = {"originalName": "a.mp4"}
    return blob


def test_generate_stored_key_shape():
    key = generate_stored_key("My Trip (360).MP4")
    assert re.fullmatch(r"360-videos/\d{13}-[0-9a-f]{12}-My_Trip_360_.MP4", key)
    assert generate_stored_key("clip.mp4") != generate_stored_key("clip.mp4")
    assert generate_stored_key("clip.mp4", prefix="").count("/") == 0


def test_sanitize_filename_strips_paths():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("C:\\videos\\tour.mov") == "tour.mov"
    assert sanitize_filename("") == "upload.mp4"


def test_derived_key_keeps_full_source_path():
    assert derived_key("thumbnails/", "360-videos/1-a-clip.mp4", "1000ms.jpg") == "thumbnails/360-videos/1-a-clip.mp4/1000ms.jpg"
    assert derived_key("thumbnails", "a/clip.mp4", "1000ms.jpg") != derived_key("thumbnails", "b/clip.mp4", "1000ms.jpg")


def test_validate_video_upload_rules():
    assert validate_video_upload("Video/MP4; codecs=avc1", 10) == "video/mp4"
    with pytest.raises(ValidationError, match="required"):
        validate_video_upload(None, 10)
    with pytest.raises(ValidationError, match="Unsupported"):
        validate_video_upload("image/png", 10)
    with pytest.raises(ValidationError, match="empty"):
        validate_video_upload("video/mp4", 0)
    with pytest.raises(ValidationError, match="File too large"):
        validate_video_upload("video/mp4", 11, max_bytes=10)


def test_parse_tags_dedupes():
    assert parse_tags(" a, b ,a,, c") == ["a", "b", "c"]
    assert parse_tags(None) == []


@pytest.mark.asyncio
async def test_write_url_is_put_with_content_type_and_size_cap():
    store, _, bucket = _store()
    blob = bucket.blob.return_value
    blob.generate_signed_url.return_value = "https://signed"

    url = await store.generate_access_url(
        "360-videos/a.mp4", action="write", ttl_minutes=20000, content_type="video/mp4", max_bytes=1024
    )

    assert url == "https://signed"
    kwargs = blob.generate_signed_url.call_args.kwargs
    assert kwargs["version"] == "v4"
    assert kwargs["method"] == "PUT"
    assert kwargs["content_type"] == "video/mp4"
    assert kwargs["expiration"] == timedelta(minutes=10080)
    assert kwargs["headers"] == {"x-goog-content-length-range": "0,1024"}


@pytest.mark.asyncio
async def test_write_url_requires_content_type():
    store, _, _ = _store()
    with pytest.raises(ValidationError):
        await store.generate_access_url("k", action="write")


@pytest.mark.asyncio
async def test_signing_without_key_is_upstream_error():
    store, _, bucket = _store()
    bucket.blob.return_value.generate_signed_url.side_effect = AttributeError("no private key")
    with pytest.raises(UpstreamError):
        await store.generate_access_url("k")


@pytest.mark.asyncio
async def test_stat_and_exists():
    store, _, bucket = _store()
    bucket.get_blob.return_value = _blob()
    info = await store.stat("360-videos/a.mp4")
    assert info.size == 1000
    assert info.to_dict()["contentType"] == "video/mp4"

    bucket.get_blob.return_value = None
    assert await store.stat("missing") is None

    bucket.blob.return_value.exists.side_effect = gcs_exceptions.ServiceUnavailable("down")
    with pytest.raises(UpstreamError):
        await store.exists("k")


def test_iter_range_downloads_inclusive_chunks():
    store, _, bucket = _store()
    blob = bucket.blob.return_value
    blob.download_as_bytes.side_effect = lambda start, end: b"x" * (end - start + 1)

    chunks = list(store.iter_range("k", 0, 99, chunk_size=40))

    assert [len(chunk) for chunk in chunks] == [40, 40, 20]
    assert blob.download_as_bytes.call_args_list[-1].kwargs == {"start": 80, "end": 99}


@pytest.mark.asyncio
async def test_write_stream_copies_into_blob_writer():
    store, _, bucket = _store()
    sink = io.BytesIO()
    writer = MagicMock()
    writer.__enter__.return_value = sink
    bucket.blob.return_value.open.return_value = writer
    bucket.get_blob.return_value = _blob(size=5)

    info = await store.write_stream("k", io.BytesIO(b"hello"), "video/mp4", {"uploadedBy": None, "a": 1})

    assert sink.getvalue() == b"hello"
    assert bucket.blob.return_value.metadata == {"a": "1"}
    assert info.size == 5


@pytest.mark.asyncio
async def test_list_objects_skips_folder_placeholders():
    store, client, _ = _store()
    iterator = MagicMock()
    iterator.__iter__.return_value = iter([_blob("360-videos/"), _blob("360-videos/a.mp4")])
    iterator.next_page_token = "token-2"
    client.list_blobs.return_value = iterator

    page = await store.list_objects(prefix="360-videos/", limit=10)

    assert [item.key for item in page.items] == ["360-videos/a.mp4"]
    assert page.next_page_token == "token-2"
    assert client.list_blobs.call_args.kwargs["max_results"] == 10


@pytest.mark.asyncio
async def test_delete_ignores_missing_objects():
    store, _, bucket = _store()
    bucket.blob.return_value.delete.side_effect = gcs_exceptions.NotFound("gone")
    await store.delete("k")
