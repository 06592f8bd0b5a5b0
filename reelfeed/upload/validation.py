from __future__ import annotations

import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import ffmpeg

from ..config import (
    DEFAULT_ALLOWED_EXTENSIONS,
    DEFAULT_MAX_DURATION_SECONDS,
    DEFAULT_MAX_FILE_BYTES,
)
from ..errors import InvalidStorageKeyError, ValidationError

logger = logging.getLogger(__name__)

VIDEO_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)

CONTENT_TYPES = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "m4v": "video/x-m4v",
    "webm": "video/webm",
}


@dataclass(frozen=True)
class ValidatedFile:
    path: Path
    extension: str
    size: int
    content_type: str
    duration_seconds: Optional[float] = None


def content_type_for(extension: str) -> str:
    return CONTENT_TYPES.get(extension.lower().lstrip("."), "application/octet-stream")


def generate_video_id() -> str:
    return str(uuid.uuid4())


def check_video_id(video_id: str) -> str:
    """Return video_id if it is a lowercase UUID4 string, else raise."""
    if not isinstance(video_id, str) or not VIDEO_ID_RE.match(video_id):
        raise InvalidStorageKeyError(f"Generated video id is not a valid UUID4: {video_id!r}")
    return video_id


def probe_duration(path: str) -> float:
    """Read the media duration in seconds with ffprobe."""
    try:
        info = ffmpeg.probe(path)
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
        raise ValidationError(f"Could not read video: {stderr.strip()[:200]}") from e
    except OSError as e:
        raise ValidationError(f"Could not probe video duration: {e}") from e

    duration = info.get("format", {}).get("duration")
    if duration is None:
        for stream in info.get("streams", []):
            if stream.get("codec_type") == "video" and stream.get("duration"):
                duration = stream["duration"]
                break
    if duration is None:
        raise ValidationError("Video has no readable duration")
    return float(duration)


def validate_upload(
    file_path: str,
    allowed_extensions=tuple(DEFAULT_ALLOWED_EXTENSIONS),
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
    max_duration_seconds: Optional[float] = DEFAULT_MAX_DURATION_SECONDS,
    probe: Callable[[str], float] = probe_duration,
) -> ValidatedFile:
    """Fail-fast checks in order: exists and readable, extension, size, duration.

    Duration probing is skipped when max_duration_seconds is None.
    """
    path = Path(file_path)
    if not path.is_file():
        raise ValidationError(f"Video file not found: {file_path}")
    if not os.access(path, os.R_OK):
        raise ValidationError(f"Video file is not readable: {file_path}")

    extension = path.suffix.lower().lstrip(".")
    allowed = {e.lower().lstrip(".") for e in allowed_extensions}
    if extension not in allowed:
        raise ValidationError(
            f"Unsupported video type '.{extension}'. Allowed: "
            + ", ".join(sorted(allowed))
        )

    size = path.stat().st_size
    if size == 0:
        raise ValidationError("Video file is empty")
    if size > max_file_bytes:
        raise ValidationError(
            f"Video is {size / (1024 * 1024):.1f} MiB; the limit is "
            f"{max_file_bytes / (1024 * 1024):.0f} MiB"
        )

    duration = None
    if max_duration_seconds is not None:
        duration = probe(str(path))
        if duration > max_duration_seconds:
            raise ValidationError(
                f"Video is {duration:.0f}s long; the limit is {max_duration_seconds:.0f}s"
            )

    logger.debug(f"Validated {path.name}: {size} bytes, duration={duration}")
    return ValidatedFile(
        path=path,
        extension=extension,
        size=size,
        content_type=content_type_for(extension),
        duration_seconds=duration,
    )
