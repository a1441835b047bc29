"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from urllib.parse import quote_plus


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "DuoVR Media Gateway"
    SERVICE_VERSION: str = "1.0.0"

    # Cloud Storage
    GCS_BUCKET_NAME: str = ""
    GOOGLE_CLOUD_PROJECT_ID: str = ""
    GOOGLE_APPLICATION_CREDENTIALS: str = ""

    # Database (optional; empty means storage-only mode)
    DATABASE_URL: str = ""
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = ""
    DB_USER: str = ""
    DB_PASSWORD: str = ""
    DB_SOCKET_PATH: str = ""
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Upload policy
    UPLOAD_PREFIX: str = "360-videos"
    THUMBNAIL_PREFIX: str = "thumbnails"
    TRANSCODE_PREFIX: str = "transcoded"
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024 * 1024
    ALLOWED_VIDEO_TYPES: List[str] = [
        "video/mp4",
        "video/quicktime",
        "video/webm",
        "video/x-matroska",
        "video/x-msvideo",
        "video/mpeg",
        "video/x-m4v",
    ]

    # Signed URLs
    SIGNED_URL_DEFAULT_MINUTES: int = 60
    SIGNED_URL_MAX_MINUTES: int = 10080
    UPLOAD_URL_TTL_MINUTES: int = 60
    PROBE_URL_TTL_MINUTES: int = 30
    TRANSCODE_URL_TTL_MINUTES: int = 360

    # Feature Flags
    ENABLE_STREAMING: bool = True
    ENABLE_TRANSCODING: bool = True
    ENABLE_ANALYTICS: bool = True
    ENABLE_THUMBNAILS: bool = True

    # Background processing
    PROCESSING_WORKERS: int = 2
    PROCESSING_QUEUE_SIZE: int = 100
    DEFAULT_THUMBNAIL_OFFSET_SECONDS: float = 1.0
    STALLED_PROCESSING_MINUTES: int = 360
    FFMPEG_BINARY: str = "ffmpeg"
    FFPROBE_BINARY: str = "ffprobe"

    # Playback sessions
    SESSION_IDLE_TIMEOUT_MINUTES: int = 30
    SESSION_SWEEP_INTERVAL_MINUTES: int = 5

    # Rate limiting (100 requests per 15 minutes)
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_SECONDS: int = 900

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.strip().lower() in {"development", "dev", "local"}

    @property
    def database_url(self) -> Optional[str]:
        """Resolve the async SQLAlchemy URL, or None when no database is configured."""
        url = (self.DATABASE_URL or "").strip()
        if not url and self.DB_NAME and self.DB_USER:
            password = quote_plus(self.DB_PASSWORD) if self.DB_PASSWORD else ""
            credentials = f"{quote_plus(self.DB_USER)}:{password}" if password else quote_plus(self.DB_USER)
            if self.DB_SOCKET_PATH:
                # Cloud SQL proxy exposes a unix socket directory instead of a TCP host.
                url = f"postgresql://{credentials}@/{self.DB_NAME}?host={quote_plus(self.DB_SOCKET_PATH)}"
            else:
                url = f"postgresql://{credentials}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        if not url:
            return None
        for prefix in ("postgres://", "postgresql://"):
            if url.startswith(prefix):
                return "postgresql+asyncpg://" + url[len(prefix):]
        return url

    @property
    def feature_flags(self) -> dict:
        return {
            "streaming": bool(self.ENABLE_STREAMING),
            "transcoding": bool(self.ENABLE_TRANSCODING),
            "analytics": bool(self.ENABLE_ANALYTICS),
            "thumbnails": bool(self.ENABLE_THUMBNAILS),
        }


settings = Settings()


def validate_storage_settings() -> None:
    """Fail fast when the object store bucket is not configured."""
    bucket = (settings.GCS_BUCKET_NAME or "").strip()
    if not bucket:
        raise ValueError("GCS_BUCKET_NAME is not configured. Set it to the bucket holding uploaded videos.")
