from __future__ import annotations

from .pipeline import UploadPipeline
from .validation import validate_upload, probe_duration, generate_video_id, check_video_id

__all__ = [
    "UploadPipeline",
    "validate_upload",
    "probe_duration",
    "generate_video_id",
    "check_video_id",
]
