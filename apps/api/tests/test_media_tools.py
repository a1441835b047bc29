import subprocess
from unittest.mock import MagicMock, patch

import ffmpeg
import pytest
from ffmpeg.nodes import OutputStream

from media_tools.inspector import MediaInspector, ProbeError, classify_360
from media_tools.transcoder import (
    DEFAULT_QUALITY,
    ExtractionError,
    TranscodeError,
    Transcoder,
    resolve_preset,
)
from models.enums import Projection

PROBE_PAYLOAD = {
    "streams": [
        {
            "codec_type": "video",
            "codec_name": "hevc",
            "width": 5760,
            "height": 2880,
            "avg_frame_rate": "30000/1001",
            "bit_rate": "50000000",
        },
        {"codec_type": "audio", "codec_name": "aac"},
    ],
    "format": {"duration": "61.237", "bit_rate": "52000000"},
}


def test_classify_360_ratio_window():
    assert classify_360(3840, 1920).projection == Projection.EQUIRECTANGULAR
    assert classify_360(5760, 2880).is_360 is True
    assert classify_360(3600, 2000).is_360 is True  # 1.8
    assert classify_360(1920, 1080).is_360 is False
    assert classify_360(1080, 1920).is_360 is False
    assert classify_360(None, 1080).projection == Projection.NONE
    assert classify_360(0, 0).is_360 is False


def test_probe_parses_streams_and_format():
    with patch("media_tools.inspector.ffmpeg.probe", return_value=PROBE_PAYLOAD) as probe:
        result = MediaInspector("ffprobe-test").probe("https://storage.test/clip.mp4")

    assert probe.call_args.kwargs["cmd"] == "ffprobe-test"
    assert result.width == 5760
    assert result.height == 2880
    assert result.resolution == "5760x2880"
    assert result.duration_seconds == 61.237
    assert result.frame_rate == 29.97
    assert result.bitrate == 52000000
    assert result.codec == "hevc"
    assert result.has_audio is True


def test_probe_without_video_stream_fails():
    payload = {"streams": [{"codec_type": "audio"}], "format": {"duration": "3"}}
    with patch("media_tools.inspector.ffmpeg.probe", return_value=payload):
        with pytest.raises(ProbeError):
            MediaInspector().probe("clip.mp3")


def test_probe_wraps_ffprobe_errors():
    error = ffmpeg.Error("ffprobe", b"", b"Invalid data found when processing input")
    with patch("media_tools.inspector.ffmpeg.probe", side_effect=error):
        with pytest.raises(ProbeError, match="Invalid data"):
            MediaInspector().probe("broken.mp4")

    with patch("media_tools.inspector.ffmpeg.probe", side_effect=subprocess.TimeoutExpired("ffprobe", 120)):
        with pytest.raises(ProbeError):
            MediaInspector().probe("slow.mp4")


def test_resolve_preset_defaults_and_normalizes():
    assert resolve_preset("720P").height == 720
    assert resolve_preset(" 480p ").width == 854
    assert resolve_preset("8k").label == DEFAULT_QUALITY
    assert resolve_preset(None).label == DEFAULT_QUALITY


def test_thumbnail_rejects_offsets_outside_video():
    transcoder = Transcoder()
    with pytest.raises(ExtractionError):
        transcoder.thumbnail("clip.mp4", -1)
    with pytest.raises(ExtractionError):
        transcoder.thumbnail("clip.mp4", 12, duration=10)


def test_thumbnail_returns_jpeg_bytes():
    with patch.object(OutputStream, "run", return_value=(b"\xff\xd8jpeg", b"")) as run:
        image = Transcoder().thumbnail("https://storage.test/clip.mp4", 2.5, duration=10)

    assert image == b"\xff\xd8jpeg"
    assert run.call_args.kwargs["capture_stdout"] is True


def test_thumbnail_empty_output_is_extraction_error():
    with patch.object(OutputStream, "run", return_value=(b"", b"")):
        with pytest.raises(ExtractionError):
            Transcoder().thumbnail("clip.mp4", 1)


def test_thumbnail_ffmpeg_failure_is_transcode_error():
    error = ffmpeg.Error("ffmpeg", b"", b"Server returned 403 Forbidden")
    with patch.object(OutputStream, "run", side_effect=error):
        with pytest.raises(TranscodeError, match="403"):
            Transcoder().thumbnail("clip.mp4", 1)


def test_transcode_failure_removes_output(tmp_path):
    process = MagicMock()
    process.stdout = [b"out_time_us=1000000\n", b"progress=continue\n"]
    process.wait.return_value = 1

    with patch("media_tools.transcoder.subprocess.Popen", return_value=process) as popen:
        with pytest.raises(TranscodeError, match="exited with code 1"):
            Transcoder(work_dir=str(tmp_path)).transcode("clip.mp4", "720p", duration=10)

    command = popen.call_args.args[0]
    assert "-progress" in command
    assert "libx264" in command
    assert list(tmp_path.iterdir()) == []


def test_transcode_reports_progress(tmp_path):
    process = MagicMock()
    process.stdout = [f"out_time_us={seconds * 1_000_000}\n".encode() for seconds in (1, 2, 5, 9)]
    process.wait.return_value = 0
    seen = []

    with (
        patch("media_tools.transcoder.subprocess.Popen", return_value=process),
        patch.object(MediaInspector, "probe", side_effect=ProbeError("no output")),
    ):
        result = Transcoder(work_dir=str(tmp_path)).transcode("clip.mp4", "480p", seen.append, duration=10)

    assert seen == [10, 20, 50, 90, 100]
    assert (result.width, result.height) == (854, 480)
    assert result.output_path.startswith(str(tmp_path))


def test_transcode_kills_ffmpeg_when_progress_handling_fails(tmp_path):
    process = MagicMock()
    process.stdout = [b"out_time_us=5000000\n"]

    def _explode(percent):
        raise RuntimeError("progress sink closed")

    with patch("media_tools.transcoder.subprocess.Popen", return_value=process):
        with pytest.raises(RuntimeError, match="progress sink closed"):
            Transcoder(work_dir=str(tmp_path)).transcode("clip.mp4", "720p", _explode, duration=10)

    process.kill.assert_called_once()
    process.wait.assert_called_once()
    assert list(tmp_path.iterdir()) == []
