"""Technical metadata extraction for video sources addressable by URL or path."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Optional

import ffmpeg

from models.enums import Projection

logger = logging.getLogger(__name__)

# Equirectangular frames are 2:1; allow some slack for encoder padding.
EQUIRECTANGULAR_MIN_RATIO = 1.8
EQUIRECTANGULAR_MAX_RATIO = 2.1


class ProbeError(Exception):
    """Source unreadable or not a recognized video container."""


@dataclass
class ProbeResult:
    duration_seconds: Optional[float]
    width: int
    height: int
    frame_rate: Optional[float]
    bitrate: Optional[int]
    codec: Optional[str]
    has_audio: bool

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass(frozen=True)
class Classification:
    is_360: bool
    projection: Projection


def classify_360(width: Optional[int], height: Optional[int]) -> Classification:
    """Aspect-ratio heuristic for 360° content.

    Only flags equirectangular frames. Ultrawide 2:1 flat footage is a known
    false positive and cropped or cubemap 360 content a known false negative.
    """
    if not width or not height or width <= 0 or height <= 0:
        return Classification(is_360=False, projection=Projection.NONE)
    ratio = float(width) / float(height)
    if EQUIRECTANGULAR_MIN_RATIO <= ratio <= EQUIRECTANGULAR_MAX_RATIO:
        return Classification(is_360=True, projection=Projection.EQUIRECTANGULAR)
    return Classification(is_360=False, projection=Projection.NONE)


def _parse_rate(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        if "/" in value:
            numerator, denominator = value.split("/", 1)
            if float(denominator) == 0:
                return None
            return round(float(numerator) / float(denominator), 3)
        return round(float(value), 3)
    except (TypeError, ValueError):
        return None


def _parse_float(value: Any) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _parse_int(value: Any) -> Optional[int]:
    parsed = _parse_float(value)
    return int(parsed) if parsed is not None else None


class MediaInspector:
    """Runs ffprobe against a URL (signed read URL) or local path."""

    def __init__(self, ffprobe_cmd: str = "ffprobe", timeout_seconds: int = 120):
        self.ffprobe_cmd = ffprobe_cmd
        self.timeout_seconds = timeout_seconds

    def probe(self, url: str) -> ProbeResult:
        try:
            probe = ffmpeg.probe(url, cmd=self.ffprobe_cmd, timeout=self.timeout_seconds)
        except ffmpeg.Error as exc:
            stderr = exc.stderr.decode(errors="replace").strip() if exc.stderr else str(exc)
            raise ProbeError(f"ffprobe failed: {stderr[-500:]}") from exc
        except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
            raise ProbeError(f"ffprobe could not run: {exc}") from exc
        return self._parse(probe)

    def _parse(self, probe: Dict[str, Any]) -> ProbeResult:
        streams = probe.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video is None:
            raise ProbeError("No video stream found")
        width = _parse_int(video.get("width"))
        height = _parse_int(video.get("height"))
        if not width or not height:
            raise ProbeError("Video stream has no dimensions")

        fmt = probe.get("format") or {}
        duration = _parse_float(fmt.get("duration")) or _parse_float(video.get("duration"))
        frame_rate = _parse_rate(video.get("avg_frame_rate")) or _parse_rate(video.get("r_frame_rate"))
        bitrate = _parse_int(fmt.get("bit_rate")) or _parse_int(video.get("bit_rate"))

        return ProbeResult(
            duration_seconds=round(duration, 3) if duration else None,
            width=width,
            height=height,
            frame_rate=frame_rate,
            bitrate=bitrate,
            codec=video.get("codec_name"),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
        )
