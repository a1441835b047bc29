"""Thumbnail extraction and quality renditions with ffmpeg."""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import ffmpeg

from media_tools.inspector import MediaInspector, ProbeError

logger = logging.getLogger(__name__)

THUMBNAIL_WIDTH = 640
AUDIO_BITRATE = "128k"
PROGRESS_STEP_PERCENT = 5


class ExtractionError(Exception):
    """No frame could be extracted at the requested offset."""


class TranscodeError(Exception):
    """ffmpeg failed or could not be started."""


@dataclass(frozen=True)
class QualityPreset:
    label: str
    width: int
    height: int
    bitrate_kbps: int
    crf: int


QUALITY_PRESETS: Dict[str, QualityPreset] = {
    "2160p": QualityPreset("2160p", 3840, 2160, 16000, 20),
    "1440p": QualityPreset("1440p", 2560, 1440, 10000, 21),
    "1080p": QualityPreset("1080p", 1920, 1080, 6000, 22),
    "720p": QualityPreset("720p", 1280, 720, 3000, 23),
    "480p": QualityPreset("480p", 854, 480, 1500, 24),
    "360p": QualityPreset("360p", 640, 360, 800, 26),
}
DEFAULT_QUALITY = "1080p"


def resolve_preset(label: Optional[str]) -> QualityPreset:
    """Look up a preset by label; unknown labels get the 1080p preset."""
    return QUALITY_PRESETS.get((label or "").strip().lower(), QUALITY_PRESETS[DEFAULT_QUALITY])


@dataclass
class TranscodeResult:
    output_path: str
    width: int
    height: int
    bitrate: Optional[int]
    preset: QualityPreset


ProgressCallback = Callable[[int], None]


class Transcoder:
    def __init__(
        self,
        ffmpeg_cmd: str = "ffmpeg",
        ffprobe_cmd: str = "ffprobe",
        work_dir: Optional[str] = None,
    ):
        self.ffmpeg_cmd = ffmpeg_cmd
        self.ffprobe_cmd = ffprobe_cmd
        self.work_dir = work_dir

    def thumbnail(self, source_url: str, time_offset: float = 1.0, duration: Optional[float] = None) -> bytes:
        """Return one JPEG frame taken ``time_offset`` seconds into the source."""
        offset = float(time_offset)
        if offset < 0:
            raise ExtractionError("timeOffset must be zero or positive")
        if duration is not None and offset > float(duration):
            raise ExtractionError(f"timeOffset {offset:g}s exceeds video duration {float(duration):g}s")

        try:
            out, _ = (
                ffmpeg
                .input(source_url, ss=offset)
                .filter("scale", THUMBNAIL_WIDTH, -2)
                .output("pipe:", vframes=1, format="image2", vcodec="mjpeg")
                .run(cmd=self.ffmpeg_cmd, capture_stdout=True, capture_stderr=True)
            )
        except ffmpeg.Error as exc:
            stderr = exc.stderr.decode(errors="replace").strip() if exc.stderr else str(exc)
            raise TranscodeError(f"Thumbnail extraction failed: {stderr[-500:]}") from exc
        except OSError as exc:
            raise TranscodeError(f"ffmpeg could not run: {exc}") from exc

        if not out:
            raise ExtractionError(f"No frame available at {offset:g}s")
        return out

    def transcode(
        self,
        source_url: str,
        quality: Optional[str],
        on_progress: Optional[ProgressCallback] = None,
        duration: Optional[float] = None,
    ) -> TranscodeResult:
        """Encode an H.264/AAC MP4 rendition into a temporary file.

        Blocks until ffmpeg exits. ``on_progress`` receives whole percentages when
        the source duration is known; it is advisory only. The caller owns
        ``output_path`` and must remove it.
        """
        preset = resolve_preset(quality)
        fd, output_path = tempfile.mkstemp(prefix=f"rendition-{preset.label}-", suffix=".mp4", dir=self.work_dir)
        os.close(fd)

        stream = (
            ffmpeg
            .input(source_url)
            .output(
                output_path,
                vf=(
                    f"scale={preset.width}:{preset.height}"
                    ":force_original_aspect_ratio=decrease:force_divisible_by=2"
                ),
                vcodec="libx264",
                preset="medium",
                crf=preset.crf,
                maxrate=f"{preset.bitrate_kbps}k",
                bufsize=f"{preset.bitrate_kbps * 2}k",
                pix_fmt="yuv420p",
                acodec="aac",
                movflags="+faststart",
                **{"b:a": AUDIO_BITRATE},
            )
            .global_args("-progress", "pipe:1", "-nostats")
            .overwrite_output()
        )
        command = stream.compile(cmd=self.ffmpeg_cmd)
        logger.info("Transcoding %s to %s", source_url.split("?", 1)[0], preset.label)

        try:
            with tempfile.TemporaryFile() as stderr_file:
                try:
                    process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=stderr_file)
                except OSError as exc:
                    raise TranscodeError(f"ffmpeg could not run: {exc}") from exc
                try:
                    self._follow_progress(process, duration, on_progress)
                except BaseException:
                    process.kill()
                    process.wait()
                    raise
                returncode = process.wait()
                if returncode != 0:
                    stderr_file.seek(0)
                    tail = stderr_file.read().decode(errors="replace").strip()[-2000:]
                    raise TranscodeError(f"ffmpeg exited with code {returncode}: {tail}")
        except Exception:
            _remove_quietly(output_path)
            raise

        width, height, bitrate = preset.width, preset.height, preset.bitrate_kbps * 1000
        try:
            probed = MediaInspector(self.ffprobe_cmd).probe(output_path)
            width, height, bitrate = probed.width, probed.height, probed.bitrate or bitrate
        except ProbeError as exc:
            logger.warning("Could not probe rendition %s, reporting preset values: %s", output_path, exc)

        if on_progress is not None:
            on_progress(100)
        return TranscodeResult(output_path=output_path, width=width, height=height, bitrate=bitrate, preset=preset)

    @staticmethod
    def _follow_progress(
        process: subprocess.Popen,
        duration: Optional[float],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        last_reported = -PROGRESS_STEP_PERCENT
        for raw_line in process.stdout or []:
            line = raw_line.decode(errors="replace").strip()
            key, _, value = line.partition("=")
            if key not in ("out_time_us", "out_time_ms") or not duration or on_progress is None:
                continue
            try:
                seconds = int(value) / 1_000_000
            except ValueError:
                continue
            percent = max(0, min(int(seconds / float(duration) * 100), 99))
            if percent >= last_reported + PROGRESS_STEP_PERCENT:
                last_reported = percent
                on_progress(percent)


def _remove_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove temporary rendition %s: %s", path, exc)
