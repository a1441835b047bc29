"""Byte-range parsing and quality key resolution for playback."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from models.file_record import FileRecord

_RANGE_PATTERN = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


class RangeNotSatisfiable(Exception):
    pass


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Resolve a single ``Range`` header against an object of ``size`` bytes.

    Returns None when the whole object should be served (no header, malformed
    syntax, multiple ranges). Raises RangeNotSatisfiable for a well-formed range
    that starts past the end of the object.
    """
    if not header or size <= 0:
        return None
    match = _RANGE_PATTERN.match(header)
    if not match:
        return None
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        return None

    if not raw_start:
        suffix = int(raw_end)
        if suffix == 0:
            raise RangeNotSatisfiable(header)
        return ByteRange(start=max(size - suffix, 0), end=size - 1)

    start = int(raw_start)
    end = int(raw_end) if raw_end else size - 1
    if end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiable(header)
    return ByteRange(start=start, end=min(end, size - 1))


def resolve_quality_key(stored_key: str, record: Optional[FileRecord], quality: Optional[str]) -> str:
    """Pick the rendition key for ``quality`` when one exists, else the original."""
    if not quality or record is None:
        return stored_key
    return record.qualities.get(quality.strip().lower(), stored_key)
