"""Status and classification enums shared by models and services."""

import enum


class ProcessingStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Projection(str, enum.Enum):
    EQUIRECTANGULAR = "equirectangular"
    CUBEMAP = "cubemap"
    FISHEYE = "fisheye"
    NONE = "none"


class EventType(str, enum.Enum):
    VIEW_START = "view_start"
    VIEW_END = "view_end"
    PAUSE = "pause"
    RESUME = "resume"
    SEEK = "seek"
    QUALITY_CHANGE = "quality_change"
    ERROR = "error"


ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.PROCESSING.value)
