"""ffprobe/ffmpeg wrappers for metadata extraction, thumbnails and renditions."""

from .inspector import Classification, MediaInspector, ProbeError, ProbeResult, classify_360
from .transcoder import (
    DEFAULT_QUALITY,
    QUALITY_PRESETS,
    ExtractionError,
    QualityPreset,
    TranscodeError,
    TranscodeResult,
    Transcoder,
    resolve_preset,
)
