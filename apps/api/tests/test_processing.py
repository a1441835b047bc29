from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from models.enums import JobStatus, ProcessingStatus
from services.processing import MediaProcessor, rendition_key_for, thumbnail_key_for

KEY = "360-videos/1700000000000-abc123-lake.mp4"


async def _record(repository, key=KEY):
    return await repository.create_file_record(
        stored_key=key, original_name="lake.mp4", file_size_bytes=4096, mime_type="video/mp4"
    )


def test_derived_keys():
    assert thumbnail_key_for(KEY, 1.0) == "thumbnails/360-videos/1700000000000-abc123-lake.mp4/1000ms.jpg"
    assert thumbnail_key_for(KEY, 2.25) == "thumbnails/360-videos/1700000000000-abc123-lake.mp4/2250ms.jpg"
    assert rendition_key_for(KEY, "720p") == "transcoded/360-videos/1700000000000-abc123-lake.mp4/720p.mp4"


@pytest.mark.asyncio
async def test_missing_source_marks_record_failed(store, repository, inspector, transcoder):
    processor = MediaProcessor(store, repository, inspector, transcoder)
    record = await _record(repository)

    await processor.process_upload(record.id)

    refreshed = await repository.get_file(record.id)
    assert refreshed.processing_status == ProcessingStatus.FAILED.value
    assert "not readable" in refreshed.error_message
    assert inspector.calls == []


@pytest.mark.asyncio
async def test_probe_failure_still_completes_without_metadata(store, repository, inspector, transcoder):
    processor = MediaProcessor(store, repository, inspector, transcoder)
    store.put(KEY, b"v" * 4096)
    record = await _record(repository)
    inspector.error = "moov atom not found"

    await processor.process_upload(record.id)

    refreshed = await repository.get_file(record.id)
    assert refreshed.processing_status == ProcessingStatus.COMPLETED.value
    assert refreshed.duration_seconds is None
    assert "moov atom not found" in refreshed.error_message


@pytest.mark.asyncio
async def test_flat_video_is_not_classified_as_360(store, repository, inspector, transcoder):
    inspector.result.width, inspector.result.height = 1920, 1080
    processor = MediaProcessor(store, repository, inspector, transcoder)
    store.put(KEY, b"v" * 4096)
    record = await _record(repository)

    await processor.process_upload(record.id)

    refreshed = await repository.get_file(record.id)
    assert refreshed.processing_status == ProcessingStatus.COMPLETED.value
    assert refreshed.is_360 is False
    assert refreshed.projection == "none"
    assert refreshed.duration_seconds == 12.5
    assert refreshed.frame_rate == 30.0


@pytest.mark.asyncio
async def test_status_never_moves_backwards(store, repository, inspector, transcoder):
    processor = MediaProcessor(store, repository, inspector, transcoder)
    store.put(KEY, b"v" * 4096)
    record = await _record(repository)

    await processor.process_upload(record.id)
    await processor.process_upload(record.id)

    assert len(inspector.calls) == 1
    assert not await repository.transition_status(
        record.id, [ProcessingStatus.PENDING.value], ProcessingStatus.PROCESSING
    )
    refreshed = await repository.get_file(record.id)
    assert refreshed.processing_status == ProcessingStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_thumbnail_failure_does_not_fail_processing(store, repository, inspector, transcoder):
    processor = MediaProcessor(store, repository, inspector, transcoder)
    store.put(KEY, b"v" * 4096)
    record = await _record(repository)

    with patch.object(transcoder, "thumbnail", side_effect=RuntimeError("boom")):
        await processor.process_upload(record.id)

    refreshed = await repository.get_file(record.id)
    assert refreshed.processing_status == ProcessingStatus.COMPLETED.value
    assert refreshed.thumbnail_key is None


@pytest.mark.asyncio
async def test_full_queue_rejects_submissions(store, repository, inspector, transcoder):
    processor = MediaProcessor(store, repository, inspector, transcoder, workers=1, queue_size=1)

    assert processor.submit_processing("a") is True
    assert processor.submit_processing("b") is False
    assert processor.pending == 1


@pytest.mark.asyncio
async def test_recover_stalled_fails_interrupted_work(repository):
    record = await _record(repository)
    await repository.transition_status(record.id, [ProcessingStatus.PENDING.value], ProcessingStatus.PROCESSING)
    job, created = await repository.create_transcoding_job(record.id, "720p")
    assert created

    future = datetime.now(timezone.utc) + timedelta(minutes=1)
    records, jobs = await repository.recover_stalled(future)

    assert (records, jobs) == (1, 1)
    assert (await repository.get_file(record.id)).processing_status == ProcessingStatus.FAILED.value
    assert (await repository.get_job(job.id)).status == JobStatus.FAILED.value


@pytest.mark.asyncio
async def test_slot_locks_are_released_after_work(store, repository, inspector, transcoder):
    processor = MediaProcessor(store, repository, inspector, transcoder, workers=2, queue_size=100)
    await processor.start()
    for index in range(20):
        key = f"360-videos/{index}-lake.mp4"
        store.put(key, b"v" * 64)
        record = await _record(repository, key)
        processor.submit_processing(record.id)
        job, _ = await repository.create_transcoding_job(record.id, "480p")
        processor.submit_transcode(job.id)

    await processor.drain()
    await processor.stop()

    assert processor._locks == {}
    assert processor._lock_users == {}


@pytest.mark.asyncio
async def test_recently_queued_jobs_are_requeued_on_startup(store, repository, inspector, transcoder):
    store.put(KEY, b"v" * 4096)
    record = await _record(repository)
    job, _ = await repository.create_transcoding_job(record.id, "720p")

    # A cutoff hours in the past leaves a job queued minutes ago untouched.
    cutoff = datetime.now(timezone.utc) - timedelta(hours=6)
    assert await repository.recover_stalled(cutoff) == (0, 0)

    processor = MediaProcessor(store, repository, inspector, transcoder)
    assert await processor.requeue_queued_jobs() == (1, 0)
    await processor.start()
    await processor.drain()
    await processor.stop()

    assert (await repository.get_job(job.id)).status == JobStatus.COMPLETED.value
    assert "720p" in (await repository.get_file(record.id)).qualities


@pytest.mark.asyncio
async def test_requeue_fails_jobs_that_do_not_fit(store, repository, inspector, transcoder):
    first = await _record(repository)
    second = await _record(repository, "360-videos/other.mp4")
    await repository.create_transcoding_job(first.id, "720p")
    await repository.create_transcoding_job(second.id, "720p")

    processor = MediaProcessor(store, repository, inspector, transcoder, workers=1, queue_size=1)

    assert await processor.requeue_queued_jobs() == (1, 1)
    jobs = await repository.list_jobs_for_file(first.id) + await repository.list_jobs_for_file(second.id)
    assert sorted(job.status for job in jobs) == sorted([JobStatus.QUEUED.value, JobStatus.FAILED.value])
    failed = next(job for job in jobs if job.status == JobStatus.FAILED.value)
    assert failed.error_message == "Processing queue is full"

    job, created = await repository.create_transcoding_job(failed.file_id, "720p")
    assert created and job.id != failed.id
