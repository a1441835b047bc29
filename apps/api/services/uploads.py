"""Upload validation and stored-key generation."""

from __future__ import annotations

import os
import re
import secrets
import time
from typing import Iterable, List, Optional

from config import settings
from services.errors import ValidationError

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(name: Optional[str], default: str = "upload.mp4") -> str:
    base = os.path.basename((name or "").replace("\\", "/")).strip()
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned[:128] or default


def generate_stored_key(original_name: Optional[str], prefix: Optional[str] = None) -> str:
    """Build ``<prefix>/<epoch ms>-<random token>-<sanitized name>``."""
    root = (prefix if prefix is not None else settings.UPLOAD_PREFIX).strip("/")
    token = secrets.token_hex(6)
    name = f"{int(time.time() * 1000)}-{token}-{sanitize_filename(original_name)}"
    return f"{root}/{name}" if root else name


def derived_key(prefix: str, stored_key: str, name: str) -> str:
    """Key for an asset derived from ``stored_key`` (thumbnail, rendition).

    Assets are grouped under the full source key, so two sources sharing a
    file name in different folders get distinct derived keys.
    """
    return f"{prefix.strip('/')}/{stored_key.strip('/')}/{name}"


def normalize_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def validate_video_upload(
    content_type: Optional[str],
    size_bytes: Optional[int],
    allowed_types: Optional[Iterable[str]] = None,
    max_bytes: Optional[int] = None,
) -> str:
    """Check declared type and size; returns the normalized content type."""
    allowed: List[str] = [t.lower() for t in (allowed_types or settings.ALLOWED_VIDEO_TYPES)]
    limit = int(max_bytes if max_bytes is not None else settings.MAX_UPLOAD_BYTES)
    normalized = normalize_content_type(content_type)
    if not normalized:
        raise ValidationError("File type is required")
    if normalized not in allowed:
        raise ValidationError(f"Unsupported file type: {normalized}. Allowed types: {', '.join(allowed)}")
    if size_bytes is None:
        raise ValidationError("File size is required")
    if int(size_bytes) <= 0:
        raise ValidationError("File is empty")
    if int(size_bytes) > limit:
        raise ValidationError(f"File too large. Max upload size is {limit // (1024 * 1024)}MB.")
    return normalized


def parse_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    seen: List[str] = []
    for tag in raw.split(","):
        value = tag.strip()
        if value and value not in seen:
            seen.append(value[:64])
    return seen
