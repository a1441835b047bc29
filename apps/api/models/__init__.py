"""Models package."""

from .file_record import FileRecord
from .file_rendition import FileRendition
from .transcoding_job import TranscodingJob
from .analytics_event import AnalyticsEvent
from .playback_session import PlaybackSession
